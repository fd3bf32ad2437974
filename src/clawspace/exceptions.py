"""Exception hierarchy for clawspace.

All exceptions inherit from WorkspaceError.  Expected startup failures are
returned as values (see models.ProbeResult / StartupResult); these types are
raised at component seams and for conditions the caller must act on.

Hierarchy:
    WorkspaceError (base)
    ├── TransientError (retryable marker base)
    │   ├── PortConflictError        ← port held by another start or process
    │   ├── VmLaunchError            ← hypervisor exited during startup
    │   ├── QmpError                 ← control channel failure
    │   └── SecretSourceError        ← secret manager unreachable
    └── PermanentError (non-retryable marker base)
        ├── PortExhaustedError       ← no slot fits the configured range
        ├── StartInProgressError     ← concurrent start for same workspace
        ├── HostKeyMismatchError     ← pinned SSH host key differs
        ├── WorkspaceConfigError     ← missing disk/seed/key file
        └── WorkspaceStoreError      ← persistence failure
"""

from __future__ import annotations

from typing import Any


class WorkspaceError(Exception):
    """Base exception for all clawspace errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(WorkspaceError):
    """Base for errors that may succeed on retry or after operator action."""


class PermanentError(WorkspaceError):
    """Base for errors that will not succeed on retry."""


# =============================================================================
# Port Arbitration
# =============================================================================


class PortConflictError(TransientError):
    """Host port(s) already reserved or bound.

    Attributes:
        ports: The conflicting host ports
    """

    def __init__(self, message: str, ports: list[int] | None = None, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.setdefault("ports", list(ports or []))
        super().__init__(message, ctx)
        self.ports = list(ports or [])


class PortExhaustedError(PermanentError):
    """No free port slot (or remap port) within the configured range."""


class StartInProgressError(PermanentError):
    """A start for this workspace id is already running."""


# =============================================================================
# VM Process
# =============================================================================


class VmLaunchError(TransientError):
    """Hypervisor process failed to start or exited right after launch.

    Attributes:
        returncode: Exit code of the process, if it exited
        stderr: Captured stderr tail
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        returncode: int | None = None,
        stderr: str = "",
    ):
        super().__init__(message, context)
        self.returncode = returncode
        self.stderr = stderr


class QmpError(TransientError):
    """QMP control channel failed (connect, handshake or command)."""


class WorkspaceConfigError(PermanentError):
    """Workspace definition is unusable (missing disk, seed or key file)."""


# =============================================================================
# SSH Trust
# =============================================================================


class HostKeyMismatchError(PermanentError):
    """Presented SSH host key differs from the pinned record.

    Never retried. Cleared only by forgetting the endpoint.

    Attributes:
        endpoint: "host:port" key
        expected: (algorithm, fingerprint) on record
        presented: (algorithm, fingerprint) offered by the server
    """

    def __init__(
        self,
        endpoint: str,
        expected: tuple[str, str],
        presented: tuple[str, str],
    ):
        message = (
            f"reason=hostkey_mismatch; SSH host key mismatch for {endpoint}. "
            f"Expected {expected[0]} {expected[1]}, got {presented[0]} {presented[1]}. "
            "Use forget-host and retry only if this endpoint was intentionally reprovisioned."
        )
        super().__init__(
            message,
            {"endpoint": endpoint, "expected": expected, "presented": presented},
        )
        self.endpoint = endpoint
        self.expected = expected
        self.presented = presented


# =============================================================================
# Collaborators
# =============================================================================


class SecretSourceError(TransientError):
    """Secret manager could not return the requested keys."""


class WorkspaceStoreError(PermanentError):
    """Workspace store could not be read or written."""
