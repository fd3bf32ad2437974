"""Background readiness retries for workspaces that started degraded.

One task per workspace id.  Each attempt waits ``interval`` first, then runs
the readiness function.  The first success fires ``on_ready``; running out
of attempts fires ``on_failed``.  Cancelling a loop fires neither.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from clawspace._logging import get_logger, log_task_exception
from clawspace.models import ProbeResult

logger = get_logger(__name__)

AttemptFn = Callable[[], Awaitable[ProbeResult]]
Callback = Callable[[], Any]
AttemptFailedFn = Callable[[int, int, str], Any]


async def _call(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class WarmupRetryLoop:
    """Keyed registry of warm-up tasks.

    Attributes:
        max_attempts: Attempts per loop before giving up
        interval: Seconds waited before every attempt
    """

    def __init__(self, max_attempts: int = 18, interval: float = 12.0) -> None:
        self.max_attempts = max_attempts
        self.interval = interval
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def start(
        self,
        workspace_id: str,
        attempt: AttemptFn,
        *,
        on_ready: Callback,
        on_failed: Callback,
        on_attempt_failed: AttemptFailedFn | None = None,
    ) -> asyncio.Task[None]:
        """Start a loop for ``workspace_id``, replacing any running one."""
        self.cancel(workspace_id)
        task = asyncio.create_task(
            self._run(workspace_id, attempt, on_ready, on_failed, on_attempt_failed),
            name=f"warmup-{workspace_id}",
        )
        task.add_done_callback(log_task_exception)
        self._tasks[workspace_id] = task
        return task

    def cancel(self, workspace_id: str) -> bool:
        task = self._tasks.pop(workspace_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug("Warm-up loop cancelled", extra={"workspace_id": workspace_id})
        return True

    def cancel_all(self) -> None:
        for workspace_id in list(self._tasks):
            self.cancel(workspace_id)

    def is_active(self, workspace_id: str) -> bool:
        task = self._tasks.get(workspace_id)
        return task is not None and not task.done()

    def task(self, workspace_id: str) -> asyncio.Task[None] | None:
        return self._tasks.get(workspace_id)

    async def aclose(self) -> None:
        """Cancel every loop and wait for the tasks to finish."""
        tasks = list(self._tasks.values())
        self.cancel_all()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _release(self, workspace_id: str) -> None:
        if self._tasks.get(workspace_id) is asyncio.current_task():
            del self._tasks[workspace_id]

    async def _run(
        self,
        workspace_id: str,
        attempt: AttemptFn,
        on_ready: Callback,
        on_failed: Callback,
        on_attempt_failed: AttemptFailedFn | None,
    ) -> None:
        for number in range(1, self.max_attempts + 1):
            await asyncio.sleep(self.interval)
            try:
                result = await attempt()
            except Exception as e:
                logger.warning(
                    "Warm-up attempt raised",
                    extra={"workspace_id": workspace_id, "attempt": number, "error": str(e)},
                )
                await _call(on_attempt_failed, number, self.max_attempts, f"Warmup retry error: {e}")
                continue

            if result.success:
                logger.info("Warm-up succeeded", extra={"workspace_id": workspace_id, "attempt": number})
                self._release(workspace_id)
                await _call(on_ready)
                return

            logger.debug(
                "Warm-up attempt failed",
                extra={"workspace_id": workspace_id, "attempt": number, "detail": result.message},
            )
            await _call(on_attempt_failed, number, self.max_attempts, result.message)

        logger.warning(
            "Warm-up attempts exhausted",
            extra={"workspace_id": workspace_id, "attempts": self.max_attempts},
        )
        self._release(workspace_id)
        await _call(on_failed)
