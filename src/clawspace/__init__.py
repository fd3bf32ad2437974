"""clawspace: staged startup of local workspace VMs.

Boots a QEMU guest per workspace, forwards its services to loopback host
ports and walks it through ordered readiness stages (SSH, repository,
runtime .env, secret manager, Docker stack, web endpoints) before handing
it to the caller.

Quick Start:
    ```python
    from pathlib import Path

    from clawspace import (
        CommandChannel,
        PortArbiter,
        QemuLauncher,
        Settings,
        SshSessionFactory,
        TrustStore,
        Workspace,
        WorkspaceStartupOrchestrator,
        WorkspaceStore,
    )

    settings = Settings()
    store = WorkspaceStore(settings.workspace_store_path)
    channel = CommandChannel(SshSessionFactory(TrustStore(settings.trust_store_path)))
    orchestrator = WorkspaceStartupOrchestrator(
        arbiter=PortArbiter(),
        launcher=QemuLauncher(settings),
        channel=channel,
        repository=store,
    )

    workspace = Workspace(
        id="dev",
        disk_path=Path("dev.qcow2"),
        seed_iso_path=Path("seed.iso"),
        ssh_private_key_path=Path("~/.ssh/id_ed25519").expanduser(),
    )
    result = await orchestrator.start(workspace, listener=print)
    print(result.outcome, result.message)
    ```

Degraded starts:
    When SSH accepts connections but commands keep failing transiently, the
    start still succeeds with outcome ``degraded`` and status
    ``warming_up``; a background warm-up loop promotes the workspace to
    ``running`` once a command goes through.

Requirements:
    - QEMU 8.0+ (KVM on Linux, HVF on macOS, TCG fallback)
    - Python 3.12+
"""

from clawspace.command_channel import CommandChannel
from clawspace.config import StartupConfig
from clawspace.exceptions import (
    HostKeyMismatchError,
    PermanentError,
    PortConflictError,
    PortExhaustedError,
    QmpError,
    SecretSourceError,
    StartInProgressError,
    TransientError,
    VmLaunchError,
    WorkspaceConfigError,
    WorkspaceError,
    WorkspaceStoreError,
)
from clawspace.models import (
    CommandResult,
    ErrorKind,
    LogEvent,
    PortSet,
    ProbeResult,
    ReasonCode,
    StageEvent,
    StageKey,
    StageState,
    StartupOutcome,
    StartupResult,
    TrustVerdict,
    Workspace,
    WorkspaceStatus,
)
from clawspace.orchestrator import AutoConnectAction, WorkspaceStartupOrchestrator
from clawspace.port_arbiter import PortArbiter
from clawspace.qmp_client import QmpClient
from clawspace.readiness import ReadinessProbes
from clawspace.secrets import EnvironmentSecretSource, MappingSecretSource, SecretSource
from clawspace.settings import Settings
from clawspace.ssh_session import SshSessionFactory
from clawspace.trust_store import TrustStore
from clawspace.vm_process import QemuLauncher
from clawspace.warmup import WarmupRetryLoop
from clawspace.workspace_store import WorkspaceStore

__all__ = [
    "AutoConnectAction",
    "CommandChannel",
    "CommandResult",
    "EnvironmentSecretSource",
    "ErrorKind",
    "HostKeyMismatchError",
    "LogEvent",
    "MappingSecretSource",
    "PermanentError",
    "PortArbiter",
    "PortConflictError",
    "PortExhaustedError",
    "PortSet",
    "ProbeResult",
    "QemuLauncher",
    "QmpClient",
    "QmpError",
    "ReadinessProbes",
    "ReasonCode",
    "SecretSource",
    "SecretSourceError",
    "Settings",
    "SshSessionFactory",
    "StageEvent",
    "StageKey",
    "StageState",
    "StartInProgressError",
    "StartupConfig",
    "StartupOutcome",
    "StartupResult",
    "TransientError",
    "TrustStore",
    "TrustVerdict",
    "VmLaunchError",
    "WarmupRetryLoop",
    "Workspace",
    "WorkspaceConfigError",
    "WorkspaceError",
    "WorkspaceStartupOrchestrator",
    "WorkspaceStatus",
    "WorkspaceStore",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("clawspace")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
