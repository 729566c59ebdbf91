"""Unit tests for the liveness probe used as readiness fallback."""

import pytest
from aiohttp import web

from procbridge.bridge.health import fetch_health, probe_health

pytestmark = [pytest.mark.bridge, pytest.mark.bridge_unit]


@pytest.fixture
async def health_server():
    """aiohttp server whose /health status can be switched."""
    state = {"status": 200}

    async def handle_health(request):
        if state["status"] != 200:
            return web.Response(status=state["status"], text="unavailable")
        return web.json_response({"status": "ok"})

    app = web.Application()
    app.router.add_get("/health", handle_health)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()

    port = runner.addresses[0][1]
    yield f"http://127.0.0.1:{port}", state

    await runner.cleanup()


class TestProbeHealth:
    @pytest.mark.asyncio
    async def test_healthy_server(self, health_server):
        url, _ = health_server
        assert await probe_health(url) is True
        assert await fetch_health(url) == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_error_status_is_not_alive(self, health_server):
        url, state = health_server
        state["status"] = 503
        assert await probe_health(url) is False

    @pytest.mark.asyncio
    async def test_nothing_listening_is_not_alive(self):
        # Port 9 (discard) is essentially never served on loopback
        assert await probe_health("http://127.0.0.1:9", timeout=0.5) is False
