"""Stage bookkeeping and event delivery for one startup run."""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import TYPE_CHECKING

from clawspace._logging import get_logger
from clawspace.models import STAGE_ORDER, LogEvent, ReasonCode, StageEvent, StageKey, StageRecord, StageState

if TYPE_CHECKING:
    from clawspace.serial_diagnostics import StageHint

logger = get_logger(__name__)

ProgressListener = Callable[[StageEvent | LogEvent], None]

_REASON_PREFIX = re.compile(r"^reason=([a-z_]+);", re.IGNORECASE)

# Checked in order; the first vocabulary match wins.
_REASON_VOCABULARY: tuple[tuple[ReasonCode, tuple[str, ...]], ...] = (
    (ReasonCode.HOSTKEY_MISMATCH, ("hostkey_mismatch", "host key mismatch")),
    (ReasonCode.PORT_CONFLICT, ("host port", "already in use", "port reservation conflict")),
    (ReasonCode.ENV_MISSING, ("runtime .env", "missing-secret", "missing-file")),
    (ReasonCode.STORAGE_RO, ("read-only file system", "no space left on device", "filesystem issue")),
    (
        ReasonCode.SSH_UNSTABLE,
        ("ssh transient error", "ssh became reachable but command channel did not stabilize"),
    ),
)


def infer_reason(message: str, fallback: ReasonCode) -> ReasonCode:
    """Reason code for a failure message: explicit prefix, then vocabulary, then ``fallback``."""
    if not message or not message.strip():
        return fallback
    prefix = _REASON_PREFIX.match(message.strip())
    if prefix:
        try:
            return ReasonCode(prefix.group(1).lower())
        except ValueError:
            return fallback
    lowered = message.lower()
    for reason, phrases in _REASON_VOCABULARY:
        if any(phrase in lowered for phrase in phrases):
            return reason
    return fallback


def with_startup_reason(fallback: ReasonCode, message: str) -> str:
    """Prefix ``message`` with ``reason=<code>; `` unless it already carries one."""
    if not message or not message.strip():
        return f"reason={fallback.value}; startup failed."
    if message.lower().startswith("reason="):
        return message
    return f"reason={infer_reason(message, fallback).value}; {message}"


class StartupProgressReporter:
    """Owns the stage records of a run and forwards transitions to a listener.

    A concluded stage (success, warning, failed) never moves back to pending
    or in-progress within a run.  Listener errors are logged and otherwise
    ignored so a broken UI callback cannot abort a start.

    Attributes:
        workspace_id: Workspace the events belong to
    """

    def __init__(self, workspace_id: str, listener: ProgressListener | None = None) -> None:
        self.workspace_id = workspace_id
        self._listener = listener
        self._records: dict[StageKey, StageRecord] = {}
        self.reset()

    def reset(self) -> None:
        self._records = {key: StageRecord(key=key) for key in STAGE_ORDER}

    @property
    def records(self) -> list[StageRecord]:
        return [self._records[key].model_copy() for key in STAGE_ORDER]

    def state(self, stage: StageKey) -> StageState:
        return self._records[stage].state

    def stage(self, stage: StageKey, state: StageState, message: str) -> bool:
        """Record a transition.  Returns False when it would regress a concluded stage."""
        record = self._records[stage]
        if record.state.concluded and not state.concluded:
            logger.debug(
                "Ignoring stage regression",
                extra={"workspace_id": self.workspace_id, "stage": stage.value, "from": record.state.value},
            )
            return False
        record.state = state
        record.message = message
        logger.info(
            message,
            extra={"workspace_id": self.workspace_id, "stage": stage.value, "state": state.value},
        )
        self._emit(StageEvent(self.workspace_id, stage, state, message))
        return True

    def log(self, message: str) -> None:
        logger.info(message, extra={"workspace_id": self.workspace_id})
        self._emit(LogEvent(self.workspace_id, message))

    def apply_hint(self, hint: StageHint) -> bool:
        """Apply a serial-console hint if every earlier stage has concluded.

        In-progress hints only move a pending stage; concluding hints only
        touch a stage that has not concluded yet.
        """
        current = self._records[hint.stage].state
        if hint.state is StageState.IN_PROGRESS and current is not StageState.PENDING:
            return False
        if hint.state.concluded and current.concluded:
            return False
        index = STAGE_ORDER.index(hint.stage)
        if not all(self._records[key].state.concluded for key in STAGE_ORDER[:index]):
            return False
        return self.stage(hint.stage, hint.state, hint.message)

    def _emit(self, event: StageEvent | LogEvent) -> None:
        if self._listener is None:
            return
        try:
            self._listener(event)
        except Exception as e:
            logger.warning(
                "Progress listener raised",
                extra={"workspace_id": self.workspace_id, "error": str(e), "error_type": type(e).__name__},
            )
