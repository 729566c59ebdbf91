"""Liveness probe for the command server.

Used by the lifecycle manager as the readiness fallback when the child does
not send an explicit Ready message: GET /health on the negotiated port.
"""

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 1.0
HEALTH_PATH = "/health"


async def fetch_health(url: str, timeout: float = DEFAULT_PROBE_TIMEOUT) -> dict[str, Any]:
    """Fetch the health document of a running command server.

    Args:
        url: Base URL of the server (e.g., http://127.0.0.1:5201)
        timeout: Request timeout in seconds

    Returns:
        Parsed JSON health document

    Raises:
        httpx.HTTPError: On connection or HTTP error
    """
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as client:
        response = await client.get(f"{url.rstrip('/')}{HEALTH_PATH}")
        response.raise_for_status()
        return response.json()


async def probe_health(url: str, timeout: float = DEFAULT_PROBE_TIMEOUT) -> bool:
    """Check whether the server's liveness endpoint answers 200.

    Never raises; connection and protocol errors count as not alive.
    """
    try:
        await fetch_health(url, timeout=timeout)
        return True
    except (httpx.HTTPError, ValueError) as e:
        logger.debug(f"Health probe of {url} failed: {e}")
        return False
