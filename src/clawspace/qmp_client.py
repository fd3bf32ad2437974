"""QMP (QEMU Monitor Protocol) client for workspace VM control.

Async wrapper around the qemu.qmp library speaking to the TCP monitor that
every workspace VM exposes on its ``qmp`` host port.  Used for graceful
shutdown (``quit``), pause/resume, reset and internal snapshots.
"""

from __future__ import annotations

import asyncio
import contextlib
import types
from typing import Any, Self

from qemu.qmp import ExecInterruptedError, QMPClient, QMPError  # type: ignore[import-untyped]

from clawspace import constants
from clawspace._logging import get_logger
from clawspace.exceptions import QmpError

_logger = get_logger(__name__)


class QmpClient:
    """Async QMP client for one workspace VM.

    Usage:
        async with QmpClient("127.0.0.1", ports.qmp) as qmp:
            status = await qmp.query_status()
            await qmp.quit()
    """

    def __init__(self, host: str, port: int) -> None:
        self._address = (host, port)
        self._client: QMPClient | None = None

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.disconnect()

    async def connect(self, timeout: float = constants.QMP_TIMEOUT_SECONDS) -> None:
        """Connect and complete the capabilities handshake.

        Raises:
            QmpError: Connection, greeting or negotiation failed
        """
        host, port = self._address
        self._client = QMPClient("clawspace")
        try:
            await asyncio.wait_for(self._client.connect(self._address), timeout=timeout)
            _logger.debug("Connected to QMP", extra={"host": host, "port": port})
        except TimeoutError as e:
            await self._cleanup_client()
            msg = f"QMP connection timed out after {timeout}s"
            raise QmpError(msg, {"host": host, "port": port}) from e
        except (OSError, QMPError) as e:
            await self._cleanup_client()
            msg = f"QMP connection failed: {e}"
            raise QmpError(msg, {"host": host, "port": port}) from e

    async def disconnect(self) -> None:
        """Safe to call multiple times or if never connected."""
        await self._cleanup_client()

    async def _cleanup_client(self) -> None:
        if self._client is not None:
            try:
                await self._client.disconnect()
            except Exception:  # noqa: BLE001 - Best effort cleanup
                _logger.debug("QMP disconnect error (ignored)", exc_info=True)
            finally:
                self._client = None

    async def _execute(
        self,
        command: str,
        arguments: dict[str, Any] | None = None,
        timeout: float = constants.QMP_TIMEOUT_SECONDS,
    ) -> Any:
        if self._client is None:
            msg = "QMP client not connected"
            raise QmpError(msg)

        _logger.debug("QMP command: %s args=%s", command, arguments)
        try:
            async with asyncio.timeout(timeout):
                return await self._client.execute(command, arguments)
        except TimeoutError as e:
            msg = f"QMP {command} timed out after {timeout}s"
            raise QmpError(msg, {"command": command}) from e
        except QMPError as e:
            msg = f"QMP {command} failed: {e}"
            raise QmpError(msg, {"command": command}) from e

    async def _human_command(self, command_line: str, timeout: float) -> str:
        """Run a monitor command; text output containing "error" is a failure."""
        result = await self._execute("human-monitor-command", {"command-line": command_line}, timeout)
        if result and isinstance(result, str) and "error" in result.lower():
            msg = f"{command_line.split()[0]} failed: {result}"
            raise QmpError(msg, {"command_line": command_line, "response": result})
        return result if isinstance(result, str) else ""

    async def quit(self, timeout: float = constants.QMP_TIMEOUT_SECONDS) -> None:
        """Ask QEMU to exit.  QEMU may drop the connection before replying."""
        try:
            await self._execute("quit", timeout=timeout)
        except QmpError as e:
            if not isinstance(e.__cause__, ExecInterruptedError):
                raise
        _logger.info("QMP quit sent", extra={"host": self._address[0], "port": self._address[1]})

    async def stop(self) -> None:
        await self._execute("stop")

    async def cont(self) -> None:
        await self._execute("cont")

    async def system_reset(self) -> None:
        await self._execute("system_reset")

    async def query_status(self) -> str:
        """Run state reported by QEMU, e.g. ``running`` or ``paused``."""
        result = await self._execute("query-status")
        if not isinstance(result, dict):
            return "unknown"
        return str(result.get("status", "unknown"))

    async def save_snapshot(self, name: str, timeout: float = 30.0) -> None:
        """Create an internal snapshot in the qcow2 overlay.

        Raises:
            QmpError: savevm failed or timed out
        """
        await self._human_command(f"savevm {name}", timeout)
        _logger.info("VM snapshot saved: %s", name)

    async def load_snapshot(self, name: str, timeout: float = 30.0) -> None:
        await self._human_command(f"loadvm {name}", timeout)
        _logger.info("VM snapshot loaded: %s", name)


async def send_quit(host: str, port: int, timeout: float = constants.QMP_TIMEOUT_SECONDS) -> bool:
    """Best-effort graceful shutdown.  False when the monitor was unreachable."""
    client = QmpClient(host, port)
    try:
        await client.connect(timeout)
        await client.quit(timeout)
    except QmpError as e:
        _logger.debug("QMP quit failed", extra={"host": host, "port": port, "error": e.message})
        return False
    finally:
        with contextlib.suppress(QmpError):
            await client.disconnect()
    return True
