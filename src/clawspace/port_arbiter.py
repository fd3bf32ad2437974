"""Host port arbitration for workspace starts.

Two independent guards keep workspaces off each other's ports:

- Slot allocation: every workspace gets a deterministic PortSet.  Slot n
  shifts all base ports by n * 100.  The allocator remembers what it handed
  out, so two workspaces defined in the same process never share a slot.
- Start reservation: while a start is in flight its host ports are held in a
  lock-guarded ReservationSet, then re-validated with a live bind-probe so
  ports held by unrelated processes are caught before the hypervisor fails
  to bind them.

Only the in-memory bookkeeping runs under the lock.  Bind-probes run outside
it; callers on the event loop should go through ``asyncio.to_thread``.
"""

from __future__ import annotations

import contextlib
import socket
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from clawspace import constants
from clawspace._logging import get_logger
from clawspace.exceptions import PortExhaustedError
from clawspace.models import ErrorKind, PortSet, ProbeResult

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable

    from clawspace.models import Workspace

logger = get_logger(__name__)

_UI_V2_NAME = "UIv2"


def _format_ports(ports: Iterable[int]) -> str:
    return ", ".join(f"{constants.LOOPBACK_HOST}:{port}" for port in ports)


def is_port_available(port: int) -> bool:
    """True iff a TCP listener can be opened and closed on loopback at ``port``."""
    if not 0 < port <= constants.MAX_PORT:
        return False
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((constants.LOOPBACK_HOST, port))
        sock.listen(1)
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            sock.close()
    return True


@dataclass(frozen=True, slots=True)
class ReservationOutcome:
    """Result of ``PortArbiter.try_reserve_start_ports``."""

    ok: bool
    reserved_ports: frozenset[int] = field(default_factory=frozenset)
    error: str = ""


class PortArbiter:
    """Owns slot allocation, start reservations and the active-start registry.

    One instance per process (or per test).  All state lives on the instance;
    nothing is module-global.

    Attributes:
        range_start: First SSH port of slot 0
        range_end: Highest SSH port a slot may use
    """

    def __init__(
        self,
        range_start: int = constants.DEFAULT_PORT_RANGE_START,
        range_end: int = constants.DEFAULT_PORT_RANGE_END,
    ) -> None:
        if range_end < range_start:
            raise ValueError(f"port range end {range_end} is below start {range_start}")
        self.range_start = range_start
        self.range_end = range_end
        self._lock = threading.Lock()
        self._allocated: set[int] = set()
        self._reserved: set[int] = set()
        self._reserved_by_workspace: dict[str, set[int]] = {}
        self._active_starts: set[str] = set()

    # ------------------------------------------------------------------
    # Slot allocation
    # ------------------------------------------------------------------

    def allocate_ports(self, requested: PortSet | None = None) -> PortSet:
        """Return ``requested`` if all its ports are free, else the first free slot.

        Raises:
            PortExhaustedError: No slot within the configured range is free
        """
        with self._lock:
            if requested is not None and self._allocated.isdisjoint(requested.host_ports()):
                self._allocated.update(requested.host_ports())
                return requested

            base = PortSet()
            slot = 0
            while self.range_start + slot * constants.PORT_SLOT_STEP <= self.range_end:
                offset = self.range_start - base.ssh + slot * constants.PORT_SLOT_STEP
                slot += 1
                try:
                    candidate = base.shifted(offset)
                except ValueError:
                    # Shifted past 65535
                    break
                if self._allocated.isdisjoint(candidate.host_ports()):
                    self._allocated.update(candidate.host_ports())
                    logger.debug("Allocated port slot", extra={"slot": slot - 1, "ssh": candidate.ssh})
                    return candidate

        raise PortExhaustedError(
            f"No available ports in range {self.range_start}-{self.range_end}",
            {"range_start": self.range_start, "range_end": self.range_end},
        )

    def release_ports(self, ports: PortSet | None) -> None:
        """Free a PortSet from the allocator.  Idempotent."""
        if ports is None:
            return
        with self._lock:
            self._allocated.difference_update(ports.host_ports())

    # ------------------------------------------------------------------
    # Active-start registry
    # ------------------------------------------------------------------

    def begin_start(self, workspace_id: str) -> bool:
        """Register a start.  False if one is already active for this id."""
        with self._lock:
            if workspace_id in self._active_starts:
                return False
            self._active_starts.add(workspace_id)
            return True

    def complete_start(self, workspace_id: str) -> None:
        with self._lock:
            self._active_starts.discard(workspace_id)
            self._self_heal_locked()

    def is_start_in_progress(self, workspace_id: str) -> bool:
        with self._lock:
            return workspace_id in self._active_starts

    # ------------------------------------------------------------------
    # Start reservations
    # ------------------------------------------------------------------

    def try_reserve_start_ports(self, workspace: Workspace) -> ReservationOutcome:
        """Reserve every host port of ``workspace`` for the duration of a start.

        Phase 1 (under lock): reject ports another start already holds, then
        register ours.  Phase 2 (no lock): bind-probe each port; any port
        held by an outside process rolls the reservation back.
        """
        ports = sorted({port for _, port in self.workspace_host_ports(workspace) if 0 < port <= constants.MAX_PORT})

        with self._lock:
            self._self_heal_locked()
            conflicts = [port for port in ports if port in self._reserved]
            if conflicts:
                error = f"Host port reservation conflict: {_format_ports(conflicts)}."
                logger.warning(error, extra={"workspace_id": workspace.id, "ports": conflicts})
                return ReservationOutcome(ok=False, error=error)
            reserved = set(ports)
            self._reserved.update(reserved)
            self._reserved_by_workspace[workspace.id] = set(reserved)

        busy = [port for port in ports if not self.is_port_available(port)]
        if busy:
            self.release_workspace_reservations(workspace.id)
            error = f"Host port(s) in use: {_format_ports(busy)}."
            logger.warning(error, extra={"workspace_id": workspace.id, "ports": busy})
            return ReservationOutcome(ok=False, error=error)

        return ReservationOutcome(ok=True, reserved_ports=frozenset(reserved))

    def release_workspace_reservations(self, workspace_id: str) -> None:
        with self._lock:
            reserved = self._reserved_by_workspace.pop(workspace_id, None)
            if reserved:
                self._reserved.difference_update(reserved)

    def snapshot_reserved_ports(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._reserved)

    def _self_heal_locked(self) -> None:
        """Drop reservations no active start owns (must hold lock)."""
        if not self._active_starts and self._reserved:
            logger.debug("Clearing stale start reservations", extra={"ports": sorted(self._reserved)})
            self._reserved.clear()
            self._reserved_by_workspace.clear()
            return
        for stale_id in [wid for wid in self._reserved_by_workspace if wid not in self._active_starts]:
            self._reserved.difference_update(self._reserved_by_workspace.pop(stale_id))

    # ------------------------------------------------------------------
    # OS probing and single-port remap
    # ------------------------------------------------------------------

    @staticmethod
    def workspace_host_ports(workspace: Workspace) -> list[tuple[str, int]]:
        return (workspace.ports or PortSet()).named_ports()

    @staticmethod
    def is_port_available(port: int) -> bool:
        return is_port_available(port)

    def busy_start_ports(self, workspace: Workspace) -> list[tuple[str, int]]:
        return [(name, port) for name, port in self.workspace_host_ports(workspace) if not self.is_port_available(port)]

    def find_next_available_port(self, start: int, excluded: Collection[int] = ()) -> int:
        """First bindable port scanning up from ``start``, wrapping to 1024.

        Raises:
            PortExhaustedError: Every candidate port is excluded or bound
        """
        first = min(max(start, constants.MIN_REMAP_PORT), constants.MAX_PORT)
        candidates = (
            *range(first, constants.MAX_PORT + 1),
            *range(constants.MIN_REMAP_PORT, first),
        )
        for port in candidates:
            if port in excluded:
                continue
            if self.is_port_available(port):
                return port
        raise PortExhaustedError("No free local host port available for UI-v2 fallback.")

    def reassign_ui_v2_port(self, workspace: Workspace, reason: str) -> ProbeResult:
        """Move ``workspace.ports.ui_v2`` to the next free port above it."""
        if workspace.ports is None:
            return ProbeResult.fail("Workspace ports are not initialized.", ErrorKind.CONFIG)

        current = workspace.ports.ui_v2
        excluded = {port for name, port in self.workspace_host_ports(workspace) if name != _UI_V2_NAME}
        excluded |= self.snapshot_reserved_ports()
        with self._lock:
            excluded |= self._allocated
        excluded.add(current)

        try:
            replacement = self.find_next_available_port(current + 1, excluded)
        except PortExhaustedError as e:
            return ProbeResult.fail(f"UI-v2 auto-remap failed: {e.message}", ErrorKind.CONFIG)

        workspace.ports.ui_v2 = replacement
        with self._lock:
            if current in self._allocated:
                self._allocated.discard(current)
                self._allocated.add(replacement)

        message = (
            f"{reason}. UI-v2 remapped {constants.LOOPBACK_HOST}:{current} -> {constants.LOOPBACK_HOST}:{replacement}."
        )
        logger.info(message, extra={"workspace_id": workspace.id, "old_port": current, "new_port": replacement})
        return ProbeResult.ok(message)

    def ensure_start_ports_ready(self, workspace: Workspace) -> ProbeResult:
        """Pre-flight bind-probe; remaps UI-v2 once if it is the port in the way."""
        busy = self.busy_start_ports(workspace)
        if not busy:
            return ProbeResult.ok("")

        if any(name == _UI_V2_NAME for name, _ in busy):
            remapped = self.reassign_ui_v2_port(workspace, "UI-v2 port was already in use before start")
            if remapped.success:
                busy = self.busy_start_ports(workspace)
                if not busy:
                    return remapped

        conflict_text = ", ".join(f"{name}={constants.LOOPBACK_HOST}:{port}" for name, port in busy)
        return ProbeResult.fail(
            f"Host port(s) in use: {conflict_text}. Use auto-assigned ports or free the conflicting ports.",
            ErrorKind.CONFIG,
        )
