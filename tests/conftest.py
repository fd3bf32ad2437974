"""Shared pytest fixtures for clawspace tests.

Nothing here boots a VM.  SSH sessions, hypervisor processes and readiness
probes are replaced by small fakes; port and TCP tests use real loopback
sockets.
"""

from __future__ import annotations

import asyncio
import socket
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from clawspace.config import StartupConfig
from clawspace.models import CommandResult, ErrorKind, PortSet, ProbeResult, Workspace
from clawspace.port_arbiter import PortArbiter
from clawspace.readiness import StorageDiagnosis
from clawspace.ssh_session import RemoteOutput

# ============================================================================
# Loopback helpers
# ============================================================================


def free_port() -> int:
    """A loopback port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def listening_socket() -> Iterator[socket.socket]:
    """A bound, listening loopback socket (port busy for the test's duration)."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    try:
        yield sock
    finally:
        sock.close()


# ============================================================================
# Workspaces
# ============================================================================


@pytest.fixture
def make_workspace(tmp_path: Path) -> Callable[..., Workspace]:
    """Factory for workspaces whose disk, seed and key files exist."""

    def factory(workspace_id: str = "ws1", **overrides: Any) -> Workspace:
        root = tmp_path / workspace_id
        root.mkdir(parents=True, exist_ok=True)
        for name in ("disk.qcow2", "seed.iso", "id_ed25519"):
            (root / name).write_bytes(b"")
        fields: dict[str, Any] = {
            "id": workspace_id,
            "name": f"{workspace_id}-name",
            "disk_path": root / "disk.qcow2",
            "seed_iso_path": root / "seed.iso",
            "ssh_private_key_path": root / "id_ed25519",
            "ports": PortSet(),
        }
        fields.update(overrides)
        return Workspace(**fields)

    return factory


@pytest.fixture
def workspace(make_workspace: Callable[..., Workspace]) -> Workspace:
    return make_workspace()


@pytest.fixture
def fast_config() -> StartupConfig:
    """Timings shrunk so polling loops finish in milliseconds."""
    return StartupConfig(
        early_exit_check_seconds=0,
        stop_wait_seconds=0,
        serial_wait_seconds=0,
        ssh_tcp_timeout_seconds=0.2,
        tcp_retry_interval_seconds=0.01,
        ssh_stable_grace_seconds=0,
        ssh_stable_timeout_seconds=0.2,
        ssh_stable_backoff_base_seconds=0.01,
        ssh_stable_backoff_step_seconds=0,
        ssh_stable_backoff_max_seconds=0.01,
        ssh_retry_delay_seconds=0,
        repository_timeout_seconds=0.2,
        repository_backoff_base_seconds=0.01,
        repository_backoff_step_seconds=0,
        repository_backoff_max_seconds=0.01,
        env_timeout_seconds=0.2,
        env_retry_seconds=0.01,
        env_heal_settle_seconds=0,
        docker_timeout_seconds=0.2,
        docker_retry_seconds=0.01,
        cloud_init_timeout_seconds=0.2,
        cloud_init_retry_seconds=0.01,
        secret_manager_timeout_seconds=0.2,
        api_timeout_seconds=0.1,
        web_timeout_seconds=0.1,
        web_fallback_timeout_seconds=0.1,
        warmup_max_attempts=3,
        warmup_interval_seconds=0,
    )


# ============================================================================
# Port arbiter
# ============================================================================


@pytest.fixture
def arbiter(monkeypatch: pytest.MonkeyPatch) -> PortArbiter:
    """Arbiter whose bind-probes always report the port as free."""
    arbiter = PortArbiter()
    monkeypatch.setattr(arbiter, "is_port_available", lambda port: True)
    return arbiter


# ============================================================================
# SSH sessions
# ============================================================================


Responder = Callable[[str], RemoteOutput]


def ok(stdout: str = "") -> RemoteOutput:
    return RemoteOutput(exit_status=0, stdout=stdout, stderr="")


def exited(status: int, stdout: str = "", stderr: str = "") -> RemoteOutput:
    return RemoteOutput(exit_status=status, stdout=stdout, stderr=stderr)


class FakeSessionFactory:
    """SessionFactory replaying scripted outcomes.

    Each outcome is a RemoteOutput, an exception to raise, or a callable
    taking the command.  The last outcome repeats once the script runs out.
    """

    def __init__(self, *outcomes: RemoteOutput | BaseException | Responder) -> None:
        self.outcomes = list(outcomes) or [ok()]
        self.commands: list[str] = []
        self.ports: list[int] = []

    async def run(self, host: str, port: int, username: str, key_path: Path, command: str) -> RemoteOutput:
        self.commands.append(command)
        self.ports.append(port)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(command)
        return outcome


class FakeChannel:
    """CommandChannel stand-in keyed on command substrings."""

    def __init__(self, default: CommandResult | None = None) -> None:
        self.default = default or CommandResult(True, "")
        self.rules: list[tuple[str, list[CommandResult]]] = []
        self.commands: list[str] = []

    def on(self, fragment: str, *results: CommandResult) -> FakeChannel:
        """Reply to commands containing ``fragment``; the last result repeats."""
        self.rules.append((fragment, list(results)))
        return self

    async def run_command(self, workspace: Workspace, command: str) -> CommandResult:
        self.commands.append(command)
        for fragment, results in self.rules:
            if fragment in command:
                return results.pop(0) if len(results) > 1 else results[0]
        return self.default


# ============================================================================
# Persistence
# ============================================================================


class MemoryRepository:
    """WorkspaceRepository keeping snapshots of every save."""

    def __init__(self, *workspaces: Workspace) -> None:
        self.workspaces: dict[str, Workspace] = {w.id: w.model_copy(deep=True) for w in workspaces}
        self.history: list[tuple[str, str]] = []

    async def list_workspaces(self) -> list[Workspace]:
        return [w.model_copy(deep=True) for w in self.workspaces.values()]

    async def save(self, workspace: Workspace) -> None:
        self.workspaces[workspace.id] = workspace.model_copy(deep=True)
        self.history.append((workspace.id, workspace.status.value))

    def statuses(self, workspace_id: str) -> list[str]:
        return [status for wid, status in self.history if wid == workspace_id]


# ============================================================================
# Hypervisor
# ============================================================================


class FakeVmHandle:
    """VmHandle that either exits immediately or runs until killed or quit."""

    def __init__(self, pid: int = 4242, exit_code: int | None = None, *, survives_kill: bool = False) -> None:
        self._pid = pid
        self._exit_code = exit_code
        self.survives_kill = survives_kill
        self.kill_calls = 0

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def returncode(self) -> int | None:
        return self._exit_code

    def exit(self, code: int = 0) -> None:
        self._exit_code = code

    async def wait_exit(self, timeout: float) -> int | None:
        await asyncio.sleep(0)
        return self._exit_code

    async def is_running(self) -> bool:
        return self._exit_code is None

    async def force_kill(self) -> bool:
        self.kill_calls += 1
        if self.survives_kill:
            return False
        if self._exit_code is None:
            self._exit_code = -9
        return True

    def output_tail(self) -> str:
        return "qemu: could not bind port" if self._exit_code not in (None, -9) else ""


class FakeLauncher:
    """VmLauncher handing out prepared handles in order."""

    def __init__(self, *handles: FakeVmHandle | BaseException) -> None:
        self.handles = list(handles) or [FakeVmHandle()]
        self.launched: list[FakeVmHandle] = []
        self.ui_v2_ports: list[int] = []

    async def launch(self, workspace: Workspace) -> FakeVmHandle:
        assert workspace.ports is not None
        self.ui_v2_ports.append(workspace.ports.ui_v2)
        handle = self.handles.pop(0) if len(self.handles) > 1 else self.handles[0]
        if isinstance(handle, BaseException):
            raise handle
        self.launched.append(handle)
        return handle


# ============================================================================
# Readiness
# ============================================================================


class FakeProbes:
    """ReadinessProbes stand-in with scripted results and a call log."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.ports_up = True
        self.results: dict[str, ProbeResult] = {}
        self.storage = StorageDiagnosis(False, "guest filesystem writable")
        self.tail: str | None = "cloud-init tail line"
        self.gates: dict[str, asyncio.Event] = {}

    def set(self, probe: str, result: ProbeResult) -> FakeProbes:
        self.results[probe] = result
        return self

    def block(self, probe: str) -> asyncio.Event:
        """Make ``probe`` wait until the returned event is set."""
        self.gates[probe] = asyncio.Event()
        return self.gates[probe]

    async def _result(self, probe: str, default: str) -> ProbeResult:
        self.calls.append(probe)
        gate = self.gates.get(probe)
        if gate is not None:
            await gate.wait()
        return self.results.get(probe, ProbeResult.ok(default))

    async def wait_port(self, port: int, timeout: float) -> bool:
        self.calls.append(f"port:{port}")
        return self.ports_up

    async def wait_ssh_stable(self, workspace: Workspace) -> ProbeResult:
        return await self._result("ssh_stable", "SSH command probe succeeded.")

    async def wait_repository(self, workspace: Workspace) -> ProbeResult:
        return await self._result("repository", "Repository looks available.")

    async def cloud_init_tail(self, workspace: Workspace) -> str | None:
        self.calls.append("cloud_init_tail")
        return self.tail

    async def wait_cloud_init(self, workspace: Workspace, log: Any = None) -> ProbeResult:
        return await self._result("cloud_init", "cloud-init final stage completed.")

    async def detect_guest_storage_issue(self, workspace: Workspace) -> StorageDiagnosis:
        self.calls.append("storage")
        return self.storage

    async def wait_runtime_env(self, workspace: Workspace, log: Any = None) -> ProbeResult:
        return await self._result("env", "Runtime .env is ready.")

    async def wait_secret_manager(self, workspace: Workspace, source: Any, keys: Any = ()) -> ProbeResult:
        return await self._result("secrets", "Secrets loaded from static. Secret proxy is reachable.")

    async def wait_docker_stack(self, workspace: Workspace, log: Any = None) -> ProbeResult:
        return await self._result("docker", "Docker stack is running and healthy (5/5 expected containers).")

    async def wait_api(self, workspace: Workspace) -> ProbeResult:
        return await self._result("api", "API is reachable.")

    async def wait_web_ui(self, workspace: Workspace) -> ProbeResult:
        return await self._result("webui", "WebUI is reachable.")

    async def check_connection(self, workspace: Workspace) -> ProbeResult:
        return await self._result("connection", "Connection test passed.")


def transient(message: str = "SSH transient error: Connection reset by peer") -> ProbeResult:
    return ProbeResult.fail(message, ErrorKind.TRANSIENT)
