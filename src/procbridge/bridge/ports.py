"""Port utilities - availability probe and conflict remediation.

``is_port_in_use`` is a local bind-and-release test, not a remote health
check. ``kill_process_on_port`` finds the processes listening on a port
(``lsof`` on macOS/Linux, ``netstat`` on Windows) and kills them.
"""

import asyncio
import errno
import logging
import os
import re
import signal
import socket
import sys

logger = logging.getLogger(__name__)

# Time for the kernel to release the port after the owner dies
DEFAULT_RELEASE_DELAY = 0.5

_NETSTAT_LISTEN = re.compile(r"^\s*TCP\s+\S+:(\d+)\s+\S+\s+LISTENING\s+(\d+)\s*$", re.IGNORECASE)


def is_port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    """Check if a TCP port is in use by binding to it and releasing it.

    Args:
        port: Port to check
        host: Interface to bind

    Returns:
        True if the bind fails with EADDRINUSE
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        if sys.platform != "win32":
            # Matches the listener, which ignores sockets left in TIME_WAIT
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as e:
            if e.errno in (errno.EADDRINUSE, getattr(errno, "WSAEADDRINUSE", errno.EADDRINUSE)):
                return True
            logger.debug(f"Port probe on {host}:{port} failed: {e}")
            return False
    return False


async def _run(*argv: str) -> str:
    """Run a command and return its stdout ('' if it cannot run)."""
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        logger.warning(f"Cannot run {argv[0]}: {e}")
        return ""
    stdout, _ = await process.communicate()
    return stdout.decode("utf-8", errors="replace")


def parse_lsof_pids(output: str) -> list[int]:
    """Parse ``lsof -t`` output (one PID per line)."""
    pids = []
    for line in output.splitlines():
        line = line.strip()
        if line.isdigit():
            pids.append(int(line))
    return pids


def parse_netstat_pids(output: str, port: int) -> list[int]:
    """Parse ``netstat -ano`` output for PIDs listening on a port."""
    pids = []
    for line in output.splitlines():
        match = _NETSTAT_LISTEN.match(line)
        if match and int(match.group(1)) == port:
            pids.append(int(match.group(2)))
    return pids


async def find_listening_pids(port: int) -> list[int]:
    """Find PIDs of processes listening on a TCP port."""
    if sys.platform == "win32":
        output = await _run("netstat", "-ano", "-p", "TCP")
        pids = parse_netstat_pids(output, port)
    else:
        output = await _run("lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t")
        pids = parse_lsof_pids(output)

    # Unique, in discovery order
    return list(dict.fromkeys(pids))


async def kill_pid(pid: int) -> bool:
    """Force-kill one process.

    Returns:
        True if the kill was delivered
    """
    if sys.platform == "win32":
        output = await _run("taskkill", "/PID", str(pid), "/F")
        return "SUCCESS" in output.upper()

    try:
        os.kill(pid, signal.SIGKILL)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.error(f"Not permitted to kill PID {pid}")
        return False


async def kill_process_on_port(port: int, release_delay: float = DEFAULT_RELEASE_DELAY) -> list[int]:
    """Find and kill the processes listening on a port.

    The current process is never killed. Failures are logged, not raised;
    callers re-probe the port to learn whether remediation worked.

    Args:
        port: Port to free
        release_delay: Seconds to wait after killing for the port to be released

    Returns:
        PIDs that were killed
    """
    pids = [pid for pid in await find_listening_pids(port) if pid != os.getpid()]
    if not pids:
        logger.warning(f"No process found listening on port {port}")
        return []

    killed = []
    for pid in pids:
        if await kill_pid(pid):
            logger.info(f"Killed PID {pid} holding port {port}")
            killed.append(pid)

    if killed:
        await asyncio.sleep(release_delay)
    return killed
