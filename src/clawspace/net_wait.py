"""TCP reachability polling for forwarded guest ports."""

from __future__ import annotations

import asyncio
import contextlib

from clawspace import constants
from clawspace._logging import get_logger

logger = get_logger(__name__)


async def try_connect(host: str, port: int, timeout: float = constants.TCP_CONNECT_ATTEMPT_TIMEOUT_SECONDS) -> bool:
    """One bounded connect attempt.  The connection is closed immediately."""
    try:
        async with asyncio.timeout(timeout):
            _reader, writer = await asyncio.open_connection(host, port)
    except (OSError, TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


async def wait_tcp(
    host: str,
    port: int,
    timeout: float,
    *,
    retry_interval: float = constants.TCP_RETRY_INTERVAL_SECONDS,
    attempt_timeout: float = constants.TCP_CONNECT_ATTEMPT_TIMEOUT_SECONDS,
) -> None:
    """Poll until ``host:port`` accepts a connection.

    With user-mode networking the hypervisor accepts on the host side before
    the guest service listens, so a connect can succeed and reset right away;
    that still counts as reachable here.  Stronger checks belong to the
    caller.

    Raises:
        TimeoutError: Port not reachable within ``timeout`` seconds
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempts = 0
    while True:
        attempts += 1
        remaining = deadline - loop.time()
        if await try_connect(host, port, min(attempt_timeout, max(remaining, 0.05))):
            logger.debug("TCP port reachable", extra={"host": host, "port": port, "attempts": attempts})
            return
        if loop.time() + retry_interval > deadline:
            break
        await asyncio.sleep(retry_interval)
    raise TimeoutError(f"TCP {host}:{port} not reachable within {timeout:g}s.")
