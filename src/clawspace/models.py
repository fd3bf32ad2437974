"""Data models for clawspace."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from clawspace import constants

# ============================================================================
# Ports
# ============================================================================


class PortSet(BaseModel):
    """Host-side TCP ports one workspace occupies.

    Two auxiliary ports are derived from ``api`` at fixed offsets.  Only
    ``ui_v2`` is expected to change after allocation (conflict remap).
    """

    model_config = ConfigDict(validate_assignment=True)

    ssh: int = Field(default=constants.BASE_SSH_PORT, ge=1, le=constants.MAX_PORT)
    web: int = Field(default=constants.BASE_WEB_PORT, ge=1, le=constants.MAX_PORT)
    api: int = Field(default=constants.BASE_API_PORT, ge=1, le=constants.MAX_PORT)
    ui_v1: int = Field(default=constants.BASE_UI_V1_PORT, ge=1, le=constants.MAX_PORT)
    ui_v2: int = Field(default=constants.BASE_UI_V2_PORT, ge=1, le=constants.MAX_PORT)
    qmp: int = Field(default=constants.BASE_QMP_PORT, ge=1, le=constants.MAX_PORT)
    serial: int = Field(default=constants.BASE_SERIAL_PORT, ge=1, le=constants.MAX_PORT)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def holvi_proxy(self) -> int:
        return self.api + constants.HOLVI_PROXY_OFFSET

    @computed_field  # type: ignore[prop-decorator]
    @property
    def infisical_ui(self) -> int:
        return self.api + constants.INFISICAL_UI_OFFSET

    @model_validator(mode="after")
    def _check_ports(self) -> PortSet:
        ports = [port for _, port in self.named_ports()]
        if max(ports) > constants.MAX_PORT:
            raise ValueError(f"derived port out of range for api={self.api}")
        if len(set(ports)) != len(ports):
            raise ValueError(f"ports must be pairwise distinct: {ports}")
        return self

    def named_ports(self) -> list[tuple[str, int]]:
        """All host ports in forwarding order, including the derived ones."""
        return [
            ("SSH", self.ssh),
            ("Web", self.web),
            ("API", self.api),
            ("UIv1", self.ui_v1),
            ("UIv2", self.ui_v2),
            ("HolviProxy", self.holvi_proxy),
            ("InfisicalUI", self.infisical_ui),
            ("QMP", self.qmp),
            ("Serial", self.serial),
        ]

    def host_ports(self) -> list[int]:
        return [port for _, port in self.named_ports()]

    def allocatable_ports(self) -> list[int]:
        """Ports tracked by the slot allocator (derived ports follow api)."""
        return [self.ssh, self.web, self.api, self.ui_v1, self.ui_v2, self.qmp, self.serial]

    def shifted(self, offset: int) -> PortSet:
        return PortSet(
            ssh=self.ssh + offset,
            web=self.web + offset,
            api=self.api + offset,
            ui_v1=self.ui_v1 + offset,
            ui_v2=self.ui_v2 + offset,
            qmp=self.qmp + offset,
            serial=self.serial + offset,
        )


# ============================================================================
# Workspace
# ============================================================================


class WorkspaceStatus(str, Enum):
    """Lifecycle status of a workspace VM."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    WARMING_UP = "warming_up"
    STOPPING = "stopping"
    ERROR = "error"


class Workspace(BaseModel):
    """A named, persistent VM definition."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(min_length=1, description="Stable workspace identifier")
    name: str = ""
    username: str = constants.DEFAULT_USERNAME
    ssh_private_key_path: Path
    repo_target_dir: str = constants.DEFAULT_REPO_DIR
    memory_mb: int = Field(default=4096, ge=256, description="Guest memory in MB")
    cpu_cores: int = Field(default=2, ge=1, le=64)
    disk_path: Path
    seed_iso_path: Path
    ports: PortSet | None = None
    status: WorkspaceStatus = WorkspaceStatus.STOPPED
    is_running: bool = False
    last_run: datetime | None = None
    secret_manager_enabled: bool = False
    qemu_binary: Path | None = Field(default=None, description="Overrides Settings.qemu_bin")

    @property
    def ssh_port(self) -> int:
        return self.ports.ssh if self.ports else constants.BASE_SSH_PORT


# ============================================================================
# Startup Stages
# ============================================================================


class StageKey(str, Enum):
    """Ordered startup stages."""

    SEED = "seed"
    QEMU = "qemu"
    SSH = "ssh"
    SSH_STABLE = "ssh_stable"
    UPDATES = "updates"
    ENV = "env"
    HOLVI = "holvi"
    DOCKER = "docker"
    API = "api"
    WEBUI = "webui"
    CONNECTION = "connection"
    DONE = "done"


STAGE_ORDER: tuple[StageKey, ...] = tuple(StageKey)


class StageState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    WARNING = "warning"
    FAILED = "failed"

    @property
    def concluded(self) -> bool:
        return self in (StageState.SUCCESS, StageState.WARNING, StageState.FAILED)


class StageRecord(BaseModel):
    key: StageKey
    state: StageState = StageState.PENDING
    message: str = ""


@dataclass(frozen=True, slots=True)
class StageEvent:
    """A stage transition emitted to the caller."""

    workspace_id: str
    stage: StageKey
    state: StageState
    message: str


@dataclass(frozen=True, slots=True)
class LogEvent:
    """A free-form progress line emitted to the caller."""

    workspace_id: str
    message: str


# ============================================================================
# Results
# ============================================================================


class ErrorKind(str, Enum):
    """Failure classification, assigned once by the layer that saw the error."""

    NONE = "none"
    COMMAND_FAILED = "command_failed"
    TRANSIENT = "transient"
    HOST_KEY_MISMATCH = "host_key_mismatch"
    CONFIG = "config"
    TIMEOUT = "timeout"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of one remote command (after retries)."""

    ok: bool
    output: str
    kind: ErrorKind = ErrorKind.NONE


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Outcome of a readiness probe; failures always carry an actionable message."""

    success: bool
    message: str
    kind: ErrorKind = ErrorKind.NONE

    @classmethod
    def ok(cls, message: str) -> ProbeResult:
        return cls(True, message)

    @classmethod
    def fail(cls, message: str, kind: ErrorKind = ErrorKind.COMMAND_FAILED) -> ProbeResult:
        return cls(False, message, kind)


class ReasonCode(str, Enum):
    """Machine-readable cause attached to startup failures."""

    PORT_CONFLICT = "port_conflict"
    CONFIG_INVALID = "config_invalid"
    LAUNCH_FAILED = "launch_failed"
    SSH_UNSTABLE = "ssh_unstable"
    HOSTKEY_MISMATCH = "hostkey_mismatch"
    ENV_MISSING = "env_missing"
    STORAGE_RO = "storage_ro"
    WEB_UNREACHABLE = "web_unreachable"
    SECRETS_UNAVAILABLE = "secrets_unavailable"
    CANCELLED = "cancelled"


class StartupOutcome(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class StartupResult:
    """Final outcome of one orchestration run.

    ``success`` is true for both full and degraded success; a degraded
    workspace is alive and handed to the warm-up loop.
    """

    outcome: StartupOutcome
    message: str
    reason: ReasonCode | None = None
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def success(self) -> bool:
        return self.outcome in (StartupOutcome.SUCCESS, StartupOutcome.DEGRADED)


# ============================================================================
# Trust
# ============================================================================


class TrustRecord(BaseModel):
    """Pinned SSH host key for one endpoint."""

    algorithm: str
    fingerprint_hex: str
    first_seen_utc: datetime
    last_seen_utc: datetime


class TrustVerdict(str, Enum):
    TRUSTED = "trusted"
    UNKNOWN = "unknown"
    MISMATCHED = "mismatched"
