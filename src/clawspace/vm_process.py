"""Hypervisor child process lifecycle.

- QemuLauncher: spawn QEMU for a workspace
- VmProcess: handle the orchestrator owns until teardown; keeps an output tail
- terminate_qemu: SIGTERM, then SIGKILL after a grace period
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
from typing import TYPE_CHECKING, Protocol

from clawspace._logging import get_logger, log_task_exception
from clawspace.exceptions import VmLaunchError
from clawspace.platform_utils import ProcessWrapper
from clawspace.qemu_cmd import build_qemu_cmd

if TYPE_CHECKING:
    from clawspace.models import Workspace
    from clawspace.settings import Settings

logger = get_logger(__name__)

_OUTPUT_TAIL_LINES = 40


class VmHandle(Protocol):
    """What the orchestrator needs from a running hypervisor."""

    @property
    def pid(self) -> int | None: ...

    @property
    def returncode(self) -> int | None: ...

    async def wait_exit(self, timeout: float) -> int | None: ...

    async def is_running(self) -> bool: ...

    async def force_kill(self) -> bool: ...

    def output_tail(self) -> str: ...


class VmLauncher(Protocol):
    async def launch(self, workspace: Workspace) -> VmHandle: ...


async def terminate_qemu(
    proc: ProcessWrapper | None,
    workspace_id: str,
    *,
    term_timeout: float = 1.0,
    kill_timeout: float = 2.0,
) -> bool:
    """Stop a QEMU child.  False only when it could not be confirmed dead."""
    if proc is None or proc.returncode is not None:
        return True

    extra = {"workspace_id": workspace_id, "pid": proc.pid}
    try:
        await proc.terminate()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=term_timeout)
            logger.debug("QEMU exited after SIGTERM", extra={**extra, "returncode": proc.returncode})
            return True

        logger.warning("QEMU ignored SIGTERM, sending SIGKILL", extra={**extra, "term_timeout": term_timeout})
        await proc.kill()
        await asyncio.wait_for(proc.wait(), timeout=kill_timeout)
    except ProcessLookupError:
        return True
    except TimeoutError:
        logger.error("QEMU still alive after SIGKILL", extra={**extra, "kill_timeout": kill_timeout})
        return False
    except OSError as e:
        logger.error("Could not signal QEMU", extra={**extra, "error": str(e)})
        return False
    return True


class VmProcess:
    """A launched QEMU process plus the task draining its pipes.

    Both pipes are read concurrently; a child blocked on a full stderr pipe
    would otherwise never exit.

    Attributes:
        workspace_id: Owning workspace
    """

    def __init__(self, proc: ProcessWrapper, workspace_id: str) -> None:
        self._proc = proc
        self.workspace_id = workspace_id
        self._tail: collections.deque[str] = collections.deque(maxlen=_OUTPUT_TAIL_LINES)
        self._drain_task = asyncio.create_task(self._drain(), name=f"qemu-drain-{workspace_id}")
        self._drain_task.add_done_callback(log_task_exception)

    async def _drain(self) -> None:
        async with asyncio.TaskGroup() as tg:
            if self._proc.stdout:
                tg.create_task(self._pump(self._proc.stdout, is_stderr=False))
            if self._proc.stderr:
                tg.create_task(self._pump(self._proc.stderr, is_stderr=True))

    async def _pump(self, stream: asyncio.StreamReader, *, is_stderr: bool) -> None:
        async for raw in stream:
            line = raw.decode(errors="replace").rstrip()
            if not line:
                continue
            self._tail.append(line)
            if is_stderr:
                logger.warning(f"[QEMU stderr] {line}", extra={"workspace_id": self.workspace_id})
            else:
                logger.debug(f"[QEMU stdout] {line}", extra={"workspace_id": self.workspace_id})

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def wait_exit(self, timeout: float) -> int | None:
        """Exit code if the process ends within ``timeout``, else None."""
        try:
            return await asyncio.wait_for(self._proc.wait(), timeout=timeout)
        except TimeoutError:
            return None

    async def is_running(self) -> bool:
        return await self._proc.is_running()

    async def force_kill(self) -> bool:
        ok = await terminate_qemu(self._proc, self.workspace_id)
        await self._stop_drain()
        return ok

    def output_tail(self) -> str:
        return "\n".join(self._tail)

    async def _stop_drain(self) -> None:
        if not self._drain_task.done():
            self._drain_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._drain_task


class QemuLauncher:
    """Spawns QEMU using the binary and accelerator from Settings."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def launch(self, workspace: Workspace) -> VmProcess:
        """Start the hypervisor process.

        Raises:
            VmLaunchError: Binary missing or not executable
        """
        qemu_bin = workspace.qemu_binary or self._settings.qemu_bin
        cmd = build_qemu_cmd(workspace, qemu_bin, self._settings.accelerator)
        try:
            async_proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            msg = f"QEMU did not start: {e}"
            raise VmLaunchError(msg, {"workspace_id": workspace.id, "qemu_bin": str(qemu_bin)}) from e

        logger.info(
            "QEMU started",
            extra={"workspace_id": workspace.id, "pid": async_proc.pid, "qemu_bin": str(qemu_bin)},
        )
        return VmProcess(ProcessWrapper(async_proc), workspace.id)
