"""Workspace startup orchestration.

Drives one workspace from "stopped" to "running" through the ordered stages
(seed, qemu, ssh, ssh_stable, updates, env, holvi, docker, api, webui,
connection, done) and tears it down again.

- start: staged run reporting StageEvent / LogEvent through a listener
- start_with_port_retry: one automatic UI-v2 remap after a port conflict
- cancel_start: cancel an in-flight run (outcome ``cancelled``)
- stop: QMP quit, bounded wait, force-kill fallback
- auto-connect: caller-registered follow-up actions run as tracked tasks

Expected failures come back as StartupResult values.  Every hard failure
after launch kills the VM and releases its reservations before returning.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import aiofiles.os

from clawspace import constants
from clawspace._logging import get_logger, log_task_exception
from clawspace.config import StartupConfig
from clawspace.exceptions import PortExhaustedError, StartInProgressError, VmLaunchError, WorkspaceStoreError
from clawspace.models import (
    ErrorKind,
    LogEvent,
    ProbeResult,
    ReasonCode,
    StageKey,
    StageState,
    StartupOutcome,
    StartupResult,
    WorkspaceStatus,
)
from clawspace.progress import StartupProgressReporter, infer_reason, with_startup_reason
from clawspace.qmp_client import send_quit
from clawspace.readiness import ReadinessProbes
from clawspace.serial_diagnostics import SerialDiagnostics
from clawspace.warmup import WarmupRetryLoop

if TYPE_CHECKING:
    from pathlib import Path

    from clawspace.command_channel import CommandChannel
    from clawspace.models import Workspace
    from clawspace.port_arbiter import PortArbiter
    from clawspace.progress import ProgressListener
    from clawspace.secrets import SecretSource
    from clawspace.vm_process import VmHandle, VmLauncher
    from clawspace.workspace_store import WorkspaceRepository

logger = get_logger(__name__)

QuitFn = Callable[[str, int, float], Awaitable[bool]]

WARMUP_COMMAND = "echo warmup-ready"

_PORT_CONFLICT_PHRASES = ("host port(s) in use", "already in use", "use auto-assigned ports")
_DEGRADABLE_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.TIMEOUT})


@dataclass(frozen=True, slots=True)
class AutoConnectAction:
    """Follow-up work scheduled once a workspace is up.

    Attributes:
        name: Label used in log events
        action: Coroutine function receiving the workspace
        delay: Seconds to wait before running
        needs_ssh: Deferred until warm-up completes on degraded starts
    """

    name: str
    action: Callable[[Workspace], Awaitable[None]]
    delay: float = 0.0
    needs_ssh: bool = True


class _StartFailed(Exception):
    """Internal signal carrying a hard failure to the teardown path."""

    def __init__(self, reason: ReasonCode, message: str, *, exact: bool = False) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.exact = exact


@dataclass(slots=True)
class _StartRun:
    workspace: Workspace
    reporter: StartupProgressReporter
    serial_task: asyncio.Task[None] | None = None
    degraded: bool = False
    repo_pending: bool = False
    warnings: list[str] = field(default_factory=list)


def is_port_conflict_failure(result: StartupResult) -> bool:
    if result.reason is ReasonCode.PORT_CONFLICT:
        return True
    lowered = result.message.lower()
    return any(phrase in lowered for phrase in _PORT_CONFLICT_PHRASES)


def _same_path(a: Path, b: Path) -> bool:
    return os.path.normcase(str(a.resolve())) == os.path.normcase(str(b.resolve()))


class WorkspaceStartupOrchestrator:
    """Starts, stops and supervises workspace VMs.

    One instance per process.  Process handles, start tasks and auto-connect
    tasks are owned here and keyed by workspace id.

    Attributes:
        host: Address guest ports are forwarded to
        config: Timeouts and intervals for every stage
    """

    def __init__(
        self,
        *,
        arbiter: PortArbiter,
        launcher: VmLauncher,
        channel: CommandChannel,
        repository: WorkspaceRepository,
        config: StartupConfig | None = None,
        probes: ReadinessProbes | None = None,
        warmup: WarmupRetryLoop | None = None,
        secret_source: SecretSource | None = None,
        quit_vm: QuitFn = send_quit,
        serial_diagnostics: bool = True,
        host: str = constants.LOOPBACK_HOST,
    ) -> None:
        self.host = host
        self.config = config or StartupConfig()
        self._arbiter = arbiter
        self._launcher = launcher
        self._channel = channel
        self._repository = repository
        self._probes = probes or ReadinessProbes(channel, self.config, host=host)
        self._warmup = warmup or WarmupRetryLoop(
            max_attempts=self.config.warmup_max_attempts,
            interval=self.config.warmup_interval_seconds,
        )
        self._secret_source = secret_source
        self._quit_vm = quit_vm
        self._serial_diagnostics = serial_diagnostics

        self._processes: dict[str, VmHandle] = {}
        self._start_tasks: dict[str, asyncio.Task[object]] = {}
        self._cancel_requested: set[str] = set()
        self._auto_connect: list[AutoConnectAction] = []
        self._auto_connect_tasks: dict[str, list[asyncio.Task[None]]] = {}

    @property
    def warmup(self) -> WarmupRetryLoop:
        return self._warmup

    def process(self, workspace_id: str) -> VmHandle | None:
        return self._processes.get(workspace_id)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, workspace: Workspace, listener: ProgressListener | None = None) -> StartupResult:
        """Run every startup stage for ``workspace``.

        Mutates ``workspace`` (status, ports, is_running, last_run) and
        persists it after each status change.

        Raises:
            asyncio.CancelledError: The awaiting task itself was cancelled
                (cleanup has already run).  ``cancel_start`` yields a
                ``cancelled`` result instead.
        """
        if not self._arbiter.begin_start(workspace.id):
            error = StartInProgressError(
                f"Start already in progress for workspace '{workspace.name or workspace.id}'.",
                {"workspace_id": workspace.id},
            )
            logger.warning(error.message, extra=error.context)
            return StartupResult(StartupOutcome.FAILED, error.message)

        run = _StartRun(workspace, StartupProgressReporter(workspace.id, listener))
        task = asyncio.current_task()
        if task is not None:
            self._start_tasks[workspace.id] = task

        try:
            return await self._run_stages(run)
        except _StartFailed as failure:
            return await self._fail(run, failure)
        except asyncio.CancelledError:
            result = await self._cancelled(run)
            if workspace.id not in self._cancel_requested:
                raise
            if task is not None:
                task.uncancel()
            return result
        except Exception as e:
            logger.exception("Unexpected startup error", extra={"workspace_id": workspace.id})
            # No reason code: nothing is known about the cause.
            run.reporter.stage(
                StageKey.DONE,
                StageState.FAILED,
                f"Startup failed unexpectedly: {str(e) or type(e).__name__}",
            )
            await self._teardown(run, WorkspaceStatus.ERROR)
            raise
        finally:
            await self._stop_serial(run)
            self._arbiter.release_workspace_reservations(workspace.id)
            self._arbiter.complete_start(workspace.id)
            self._cancel_requested.discard(workspace.id)
            if self._start_tasks.get(workspace.id) is task:
                del self._start_tasks[workspace.id]

    def cancel_start(self, workspace_id: str) -> bool:
        """Cancel an in-flight start.  False when none is running."""
        task = self._start_tasks.get(workspace_id)
        if task is None or task.done():
            return False
        self._cancel_requested.add(workspace_id)
        task.cancel()
        logger.info("Start cancellation requested", extra={"workspace_id": workspace_id})
        return True

    async def start_with_port_retry(
        self,
        workspace: Workspace,
        listener: ProgressListener | None = None,
    ) -> StartupResult:
        """``start``, retried once with a remapped UI-v2 port after a port conflict."""
        first = await self.start(workspace, listener)
        if first.success or first.outcome is StartupOutcome.CANCELLED:
            return first
        if workspace.ports is None or not is_port_conflict_failure(first):
            return first

        remap = await asyncio.to_thread(
            self._arbiter.reassign_ui_v2_port,
            workspace,
            "Startup failed with a host port conflict",
        )
        if not remap.success:
            return StartupResult(
                StartupOutcome.FAILED,
                f"Startup failed: {first.message}. Retry was not possible: {remap.message}",
                first.reason,
                first.warnings,
            )

        if listener is not None:
            listener(LogEvent(workspace.id, remap.message))
        logger.info("Retrying start after UI-v2 remap", extra={"workspace_id": workspace.id})

        second = await self.start(workspace, listener)
        if second.success:
            return second
        if second.outcome is StartupOutcome.CANCELLED:
            return second
        return StartupResult(
            StartupOutcome.FAILED,
            "Startup retry failed after automatic UI-v2 port remap. "
            f"First failure: {first.message}. Retry failure: {second.message}",
            second.reason,
            second.warnings,
        )

    async def _run_stages(self, run: _StartRun) -> StartupResult:
        await self._stage_seed(run)
        await self._stage_qemu(run)
        await self._stage_ssh(run)
        await self._stage_ssh_stable(run)
        await self._stage_updates(run)
        if not run.degraded:
            await self._guest_preflight(run)
        await self._stage_env(run)
        await self._stage_holvi(run)
        await self._stage_docker(run)
        await self._stage_api(run)
        await self._stage_webui(run)
        await self._stage_connection(run)
        if run.degraded:
            return await self._finish_degraded(run)
        return await self._finish(run)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _stage_seed(self, run: _StartRun) -> None:
        ws, reporter = run.workspace, run.reporter
        reporter.stage(StageKey.SEED, StageState.IN_PROGRESS, "Checking workspace files...")

        missing = [
            f"{label} not found: {path}"
            for label, path in (
                ("Disk image", ws.disk_path),
                ("Seed image", ws.seed_iso_path),
                ("SSH private key", ws.ssh_private_key_path),
            )
            if not await aiofiles.os.path.isfile(path)
        ]
        if missing:
            message = " ".join(missing)
            reporter.stage(StageKey.SEED, StageState.FAILED, message)
            raise _StartFailed(ReasonCode.CONFIG_INVALID, message, exact=True)

        if ws.ports is None:
            try:
                ws.ports = await asyncio.to_thread(self._arbiter.allocate_ports)
            except PortExhaustedError as e:
                reporter.stage(StageKey.SEED, StageState.FAILED, e.message)
                raise _StartFailed(ReasonCode.PORT_CONFLICT, e.message, exact=True) from e
            reporter.log(f"Allocated host ports: SSH {ws.ports.ssh}, web {ws.ports.web}, API {ws.ports.api}.")

        reporter.stage(StageKey.SEED, StageState.SUCCESS, "Workspace files are present.")

    async def _stage_qemu(self, run: _StartRun) -> None:
        ws, reporter = run.workspace, run.reporter
        ws.status = WorkspaceStatus.STARTING
        reporter.stage(StageKey.QEMU, StageState.IN_PROGRESS, f"Starting VM: {ws.name or ws.id}...")

        await self._prepare_ports(run)

        owner = await self._disk_owner(ws)
        if owner is not None:
            message = (
                f"Disk image is used by running workspace '{owner}'. "
                "Each running workspace needs its own qcow2 overlay."
            )
            reporter.stage(StageKey.QEMU, StageState.FAILED, message)
            raise _StartFailed(ReasonCode.STORAGE_RO, message, exact=True)

        self._reserve(run)
        process = await self._launch(run)
        exit_code = await process.wait_exit(self.config.early_exit_check_seconds)

        if exit_code is not None:
            self._log_output_tail(run, process)
            remap = await asyncio.to_thread(
                self._arbiter.reassign_ui_v2_port,
                ws,
                f"QEMU exited early with code {exit_code}",
            )
            if not remap.success:
                message = f"QEMU exited immediately (exit {exit_code}). {remap.message}"
                reporter.stage(StageKey.QEMU, StageState.FAILED, message)
                raise _StartFailed(ReasonCode.LAUNCH_FAILED, message, exact=True)

            reporter.log(remap.message)
            self._arbiter.release_workspace_reservations(ws.id)
            await self._prepare_ports(run)
            self._reserve(run)
            reporter.log("Retrying QEMU start with updated UI-v2 host port.")

            process = await self._launch(run)
            exit_code = await process.wait_exit(self.config.early_exit_check_seconds)
            if exit_code is not None:
                self._log_output_tail(run, process)
                message = (
                    f"QEMU exited immediately after retry (exit {exit_code}). "
                    "Check host port conflicts and VM logs."
                )
                reporter.stage(StageKey.QEMU, StageState.FAILED, message)
                raise _StartFailed(ReasonCode.LAUNCH_FAILED, message, exact=True)

        ws.is_running = True
        ws.last_run = datetime.now(UTC)
        await self._persist(ws)
        reporter.stage(StageKey.QEMU, StageState.SUCCESS, f"QEMU started with PID {process.pid}")

    async def _stage_ssh(self, run: _StartRun) -> None:
        ws, reporter = run.workspace, run.reporter
        assert ws.ports is not None
        cfg = self.config

        if cfg.serial_wait_seconds > 0:
            serial = ws.ports.serial
            reporter.stage(
                StageKey.SSH,
                StageState.IN_PROGRESS,
                f"Waiting for serial boot signal on {self.host}:{serial}...",
            )
            if await self._probes.wait_port(serial, cfg.serial_wait_seconds):
                reporter.log("Serial port is reachable.")
                if self._serial_diagnostics:
                    diagnostics = SerialDiagnostics(reporter.log, reporter.apply_hint, host=self.host)
                    run.serial_task = asyncio.create_task(diagnostics.capture(serial), name=f"serial-{ws.id}")
                    run.serial_task.add_done_callback(log_task_exception)
            else:
                reporter.log("Serial boot signal not detected in time; proceeding with SSH checks.")

        reporter.stage(StageKey.SSH, StageState.IN_PROGRESS, f"Waiting for SSH on {self.host}:{ws.ports.ssh}...")
        if not await self._probes.wait_port(ws.ports.ssh, cfg.ssh_tcp_timeout_seconds):
            message = f"SSH port did not become reachable ({self.host}:{ws.ports.ssh})."
            reporter.stage(StageKey.SSH, StageState.FAILED, message)
            raise _StartFailed(ReasonCode.SSH_UNSTABLE, message)

        reporter.stage(StageKey.SSH, StageState.SUCCESS, "SSH port is reachable.")
        await self._persist(ws)

    async def _stage_ssh_stable(self, run: _StartRun) -> None:
        ws, reporter = run.workspace, run.reporter
        reporter.stage(StageKey.SSH_STABLE, StageState.IN_PROGRESS, "Waiting for stable SSH command execution...")

        stable = await self._probes.wait_ssh_stable(ws)
        if stable.success:
            reporter.stage(StageKey.SSH_STABLE, StageState.SUCCESS, "SSH command channel is stable.")
            return

        reporter.stage(StageKey.SSH_STABLE, StageState.FAILED, stable.message)
        if stable.kind in _DEGRADABLE_KINDS:
            # Known leniency: the guest is up but sshd is still settling.
            run.degraded = True
            reporter.log("SSH stabilization failed with transient error. Continuing startup with degraded SSH readiness.")
            logger.warning(
                "Continuing startup with degraded SSH readiness",
                extra={"workspace_id": ws.id, "kind": stable.kind.value, "detail": stable.message},
            )
            return

        if stable.kind is ErrorKind.HOST_KEY_MISMATCH:
            raise _StartFailed(ReasonCode.HOSTKEY_MISMATCH, stable.message)
        raise _StartFailed(ReasonCode.SSH_UNSTABLE, stable.message)

    async def _stage_updates(self, run: _StartRun) -> None:
        ws, reporter = run.workspace, run.reporter
        reporter.stage(StageKey.UPDATES, StageState.IN_PROGRESS, "Checking repository path inside VM...")
        if run.degraded:
            reporter.stage(StageKey.UPDATES, StageState.WARNING, "Skipped for now (SSH warming up).")
            return

        repo = await self._probes.wait_repository(ws)
        if repo.success:
            reporter.stage(StageKey.UPDATES, StageState.SUCCESS, "Repository looks available.")
            return

        if repo.kind is ErrorKind.TIMEOUT:
            run.repo_pending = True
            reporter.stage(
                StageKey.UPDATES,
                StageState.WARNING,
                "Repository/update still in progress; continuing startup.",
            )
            tail = await self._probes.cloud_init_tail(ws)
            if tail:
                reporter.log("cloud-init tail (latest):")
                reporter.log(tail)
            reporter.log(f"Repository check deferred: {repo.message}")
            return

        reporter.stage(StageKey.UPDATES, StageState.FAILED, "Repository verification failed.")
        if repo.kind is ErrorKind.HOST_KEY_MISMATCH:
            raise _StartFailed(ReasonCode.HOSTKEY_MISMATCH, repo.message)
        raise _StartFailed(ReasonCode.ENV_MISSING, repo.message)

    async def _guest_preflight(self, run: _StartRun) -> None:
        ws, reporter = run.workspace, run.reporter
        reporter.log("Waiting for cloud-init finalization before runtime checks...")
        cloud_init = await self._probes.wait_cloud_init(ws, reporter.log)
        if not cloud_init.success:
            reporter.log(f"cloud-init wait note: {cloud_init.message}")

        storage = await self._probes.detect_guest_storage_issue(ws)
        if storage.has_issue:
            message = f"Guest filesystem issue detected: {storage.message}"
            reporter.stage(StageKey.ENV, StageState.FAILED, message)
            reporter.stage(StageKey.DOCKER, StageState.FAILED, "Skipped due to guest filesystem error.")
            raise _StartFailed(ReasonCode.STORAGE_RO, message, exact=True)

    async def _stage_env(self, run: _StartRun) -> None:
        ws, reporter = run.workspace, run.reporter
        reporter.stage(StageKey.ENV, StageState.IN_PROGRESS, "Validating runtime .env inside VM...")
        if run.degraded:
            reporter.stage(StageKey.ENV, StageState.WARNING, "Skipped for now (SSH warming up).")
            return

        env = await self._probes.wait_runtime_env(ws, reporter.log)
        if env.success:
            reporter.stage(StageKey.ENV, StageState.SUCCESS, "Runtime .env is ready.")
            return

        message = f"Runtime .env is required before Docker startup: {env.message}"
        reporter.stage(StageKey.ENV, StageState.FAILED, message)
        if "guest filesystem issue" in env.message.lower():
            raise _StartFailed(ReasonCode.STORAGE_RO, message, exact=True)
        raise _StartFailed(ReasonCode.ENV_MISSING, message, exact=True)

    async def _stage_holvi(self, run: _StartRun) -> None:
        ws, reporter = run.workspace, run.reporter
        if run.degraded:
            reporter.stage(StageKey.HOLVI, StageState.WARNING, "Skipped for now (SSH warming up).")
            return
        if not ws.secret_manager_enabled or self._secret_source is None:
            reporter.stage(StageKey.HOLVI, StageState.WARNING, "Secret manager disabled.")
            return

        reporter.stage(StageKey.HOLVI, StageState.IN_PROGRESS, "Resolving secrets and waiting for secret proxy...")
        secrets = await self._probes.wait_secret_manager(ws, self._secret_source)
        if not secrets.success:
            reporter.stage(StageKey.HOLVI, StageState.FAILED, secrets.message)
            raise _StartFailed(ReasonCode.SECRETS_UNAVAILABLE, secrets.message, exact=True)
        reporter.stage(StageKey.HOLVI, StageState.SUCCESS, secrets.message)

    async def _stage_docker(self, run: _StartRun) -> None:
        ws, reporter = run.workspace, run.reporter
        reporter.stage(
            StageKey.DOCKER,
            StageState.IN_PROGRESS,
            "Checking Docker stack services... this might take several minutes.",
        )
        if run.degraded:
            reporter.stage(StageKey.DOCKER, StageState.WARNING, "Skipped for now (SSH warming up).")
            return

        docker = await self._probes.wait_docker_stack(ws, reporter.log)
        if docker.success:
            reporter.stage(StageKey.DOCKER, StageState.SUCCESS, docker.message)
            return
        reporter.stage(StageKey.DOCKER, StageState.FAILED, docker.message)
        run.warnings.append("Docker not fully ready")

    async def _stage_api(self, run: _StartRun) -> None:
        ws, reporter = run.workspace, run.reporter
        port = ws.ports.api if ws.ports else constants.BASE_API_PORT
        reporter.stage(StageKey.API, StageState.IN_PROGRESS, f"Waiting for API on {self.host}:{port}...")

        api = await self._probes.wait_api(ws)
        if api.success:
            reporter.stage(StageKey.API, StageState.SUCCESS, api.message)
            return
        reporter.stage(StageKey.API, StageState.FAILED, api.message)
        run.warnings.append("API not reachable")

    async def _stage_webui(self, run: _StartRun) -> None:
        ws, reporter = run.workspace, run.reporter
        port = ws.ports.web if ws.ports else constants.BASE_WEB_PORT
        reporter.stage(StageKey.WEBUI, StageState.IN_PROGRESS, f"Waiting for WebUI on {self.host}:{port}...")

        web = await self._probes.wait_web_ui(ws)
        if not web.success:
            reporter.stage(StageKey.WEBUI, StageState.FAILED, web.message)
            raise _StartFailed(ReasonCode.WEB_UNREACHABLE, web.message)
        reporter.stage(StageKey.WEBUI, StageState.SUCCESS, web.message)

    async def _stage_connection(self, run: _StartRun) -> None:
        ws, reporter = run.workspace, run.reporter
        reporter.stage(StageKey.CONNECTION, StageState.IN_PROGRESS, "Running SSH connection test...")
        if run.degraded:
            reporter.stage(StageKey.CONNECTION, StageState.WARNING, "Skipped for now (SSH warming up).")
            return

        connection = await self._probes.check_connection(ws)
        if not connection.success:
            reporter.stage(StageKey.CONNECTION, StageState.FAILED, "Connection test failed.")
            if connection.kind is ErrorKind.HOST_KEY_MISMATCH:
                raise _StartFailed(ReasonCode.HOSTKEY_MISMATCH, connection.message)
            raise _StartFailed(ReasonCode.SSH_UNSTABLE, connection.message, exact=True)
        reporter.stage(StageKey.CONNECTION, StageState.SUCCESS, "Connection test passed.")

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def _finish(self, run: _StartRun) -> StartupResult:
        ws, reporter = run.workspace, run.reporter
        self._warmup.cancel(ws.id)
        ws.status = WorkspaceStatus.RUNNING
        await self._persist(ws)
        self._schedule_auto_connect(ws, reporter, needs_ssh=None)

        if run.warnings:
            message = f"Workspace started with warnings: {', '.join(run.warnings)}. See wizard stages/VM logs."
        elif run.repo_pending:
            message = (
                "Workspace started, but repository setup is still pending. See VM Logs / Serial Console."
            )
        else:
            message = "Workspace is ready."

        reporter.stage(StageKey.DONE, StageState.SUCCESS, message)
        logger.info(
            "Workspace started",
            extra={"workspace_id": ws.id, "warnings": run.warnings, "repo_pending": run.repo_pending},
        )
        return StartupResult(StartupOutcome.SUCCESS, message, warnings=tuple(run.warnings))

    async def _finish_degraded(self, run: _StartRun) -> StartupResult:
        ws, reporter = run.workspace, run.reporter
        ws.status = WorkspaceStatus.WARMING_UP
        await self._persist(ws)

        self._schedule_auto_connect(ws, reporter, needs_ssh=False)
        reporter.log("Skipping SSH/Docker auto-connect while SSH is warming up.")
        self._start_warmup(ws, reporter)

        message = "Workspace is running. SSH is still warming up; try SSH/Docker tabs again in a moment."
        reporter.stage(StageKey.DONE, StageState.SUCCESS, message)
        logger.info("Workspace started degraded", extra={"workspace_id": ws.id})
        return StartupResult(StartupOutcome.DEGRADED, message, warnings=tuple(run.warnings))

    async def _fail(self, run: _StartRun, failure: _StartFailed) -> StartupResult:
        if failure.exact and not failure.message.lower().startswith("reason="):
            decorated = f"reason={failure.reason.value}; {failure.message}"
        else:
            decorated = with_startup_reason(failure.reason, failure.message)
        reason = infer_reason(decorated, failure.reason)

        run.reporter.stage(StageKey.DONE, StageState.FAILED, decorated)
        await self._teardown(run, WorkspaceStatus.ERROR)
        logger.warning(
            "Workspace start failed",
            extra={"workspace_id": run.workspace.id, "reason": reason.value, "detail": failure.message},
        )
        return StartupResult(StartupOutcome.FAILED, decorated, reason, tuple(run.warnings))

    async def _cancelled(self, run: _StartRun) -> StartupResult:
        message = "Start cancelled."
        run.reporter.stage(StageKey.DONE, StageState.FAILED, message)
        await self._teardown(run, WorkspaceStatus.STOPPED)
        logger.info("Workspace start cancelled", extra={"workspace_id": run.workspace.id})
        return StartupResult(StartupOutcome.CANCELLED, message, ReasonCode.CANCELLED)

    async def _teardown(self, run: _StartRun, status: WorkspaceStatus) -> None:
        ws = run.workspace
        self._warmup.cancel(ws.id)
        await self._stop_serial(run)
        process = self._processes.pop(ws.id, None)
        if process is not None:
            await process.force_kill()
        self._arbiter.release_workspace_reservations(ws.id)
        ws.status = status
        ws.is_running = False
        await self._persist(ws)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self, workspace: Workspace) -> ProbeResult:
        """Quit the VM over QMP, then force-kill it if it lingers."""
        ws = workspace
        self._warmup.cancel(ws.id)
        self.cancel_auto_connect(ws.id)
        ws.status = WorkspaceStatus.STOPPING
        await self._persist(ws)

        process = self._processes.get(ws.id)
        quit_sent = False
        if ws.ports is not None:
            quit_sent = await self._quit_vm(self.host, ws.ports.qmp, constants.QMP_TIMEOUT_SECONDS)

        still_running = False
        if process is not None:
            if await process.wait_exit(self.config.stop_wait_seconds) is None:
                logger.warning("VM did not exit after quit, force killing", extra={"workspace_id": ws.id})
                await process.force_kill()
            still_running = await process.is_running()

        self._arbiter.release_workspace_reservations(ws.id)

        if still_running:
            ws.status = WorkspaceStatus.ERROR
            await self._persist(ws)
            return ProbeResult.fail(f"VM process for '{ws.name or ws.id}' is still running after kill.")

        self._processes.pop(ws.id, None)
        ws.status = WorkspaceStatus.STOPPED
        ws.is_running = False
        await self._persist(ws)
        logger.info("Workspace stopped", extra={"workspace_id": ws.id, "quit_sent": quit_sent})
        return ProbeResult.ok("Workspace stopped.")

    async def aclose(self) -> None:
        """Cancel background work owned by this orchestrator."""
        await self._warmup.aclose()
        for workspace_id in list(self._auto_connect_tasks):
            self.cancel_auto_connect(workspace_id)

    # ------------------------------------------------------------------
    # Warm-up and auto-connect
    # ------------------------------------------------------------------

    def register_auto_connect(self, action: AutoConnectAction) -> None:
        self._auto_connect.append(action)

    async def wait_auto_connect(self, workspace_id: str) -> None:
        """Wait for the currently scheduled auto-connect tasks of a workspace."""
        tasks = list(self._auto_connect_tasks.get(workspace_id, ()))
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def cancel_auto_connect(self, workspace_id: str) -> int:
        tasks = self._auto_connect_tasks.pop(workspace_id, [])
        pending = [t for t in tasks if not t.done()]
        for t in pending:
            t.cancel()
        return len(pending)

    def _schedule_auto_connect(
        self,
        workspace: Workspace,
        reporter: StartupProgressReporter,
        *,
        needs_ssh: bool | None,
    ) -> None:
        """Schedule registered actions; ``needs_ssh=None`` schedules all of them."""
        actions = [a for a in self._auto_connect if needs_ssh is None or a.needs_ssh is needs_ssh]
        tasks = self._auto_connect_tasks.setdefault(workspace.id, [])
        tasks[:] = [t for t in tasks if not t.done()]
        for action in actions:
            task = asyncio.create_task(
                self._run_auto_connect(action, workspace, reporter),
                name=f"auto-connect-{action.name}-{workspace.id}",
            )
            task.add_done_callback(log_task_exception)
            tasks.append(task)

    async def _run_auto_connect(
        self,
        action: AutoConnectAction,
        workspace: Workspace,
        reporter: StartupProgressReporter,
    ) -> None:
        if action.delay > 0:
            await asyncio.sleep(action.delay)
        try:
            await action.action(workspace)
        except Exception as e:
            logger.warning(
                "Auto-connect action failed",
                extra={"workspace_id": workspace.id, "action": action.name, "error": str(e)},
            )
            reporter.log(f"Auto-connect '{action.name}' failed: {e}")

    def _start_warmup(self, workspace: Workspace, reporter: StartupProgressReporter) -> None:
        name = workspace.name or workspace.id

        async def attempt() -> ProbeResult:
            result = await self._channel.run_command(workspace, WARMUP_COMMAND)
            if result.ok and "warmup-ready" in result.output:
                return ProbeResult.ok("SSH stabilized.")
            return ProbeResult.fail(result.output or "SSH not ready.", result.kind)

        async def on_ready() -> None:
            await self.promote_to_running(workspace, reporter)

        def on_failed() -> None:
            reporter.log(f"Warmup retry timeout for '{name}'. SSH did not stabilize.")

        def on_attempt_failed(number: int, total: int, message: str) -> None:
            reporter.log(f"Warmup attempt {number}/{total} for '{name}' failed: {message}")

        self._warmup.start(
            workspace.id,
            attempt,
            on_ready=on_ready,
            on_failed=on_failed,
            on_attempt_failed=on_attempt_failed,
        )

    async def promote_to_running(self, workspace: Workspace, reporter: StartupProgressReporter) -> None:
        """Warm-up success: mark running and run the SSH-dependent actions."""
        workspace.status = WorkspaceStatus.RUNNING
        await self._persist(workspace)
        reporter.log(f"Warmup complete: SSH stabilized for '{workspace.name or workspace.id}'.")
        self._schedule_auto_connect(workspace, reporter, needs_ssh=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _prepare_ports(self, run: _StartRun) -> None:
        preflight = await asyncio.to_thread(self._arbiter.ensure_start_ports_ready, run.workspace)
        if not preflight.success:
            run.reporter.stage(StageKey.QEMU, StageState.FAILED, preflight.message)
            raise _StartFailed(ReasonCode.PORT_CONFLICT, preflight.message, exact=True)
        if preflight.message:
            run.reporter.log(preflight.message)

    def _reserve(self, run: _StartRun) -> None:
        outcome = self._arbiter.try_reserve_start_ports(run.workspace)
        if not outcome.ok:
            run.reporter.stage(StageKey.QEMU, StageState.FAILED, outcome.error)
            raise _StartFailed(ReasonCode.PORT_CONFLICT, outcome.error, exact=True)

    async def _launch(self, run: _StartRun) -> VmHandle:
        ws = run.workspace
        stale = self._processes.pop(ws.id, None)
        if stale is not None:
            await stale.force_kill()
        try:
            process = await self._launcher.launch(ws)
        except VmLaunchError as e:
            run.reporter.stage(StageKey.QEMU, StageState.FAILED, e.message)
            raise _StartFailed(ReasonCode.LAUNCH_FAILED, e.message, exact=True) from e
        self._processes[ws.id] = process
        return process

    def _log_output_tail(self, run: _StartRun, process: VmHandle) -> None:
        tail = process.output_tail()
        if tail:
            run.reporter.log(f"QEMU output: {tail}")

    async def _disk_owner(self, workspace: Workspace) -> str | None:
        """Name of another running workspace using the same disk image."""
        for other in await self._repository.list_workspaces():
            if other.id == workspace.id or not other.is_running:
                continue
            if _same_path(other.disk_path, workspace.disk_path):
                return other.name or other.id
        return None

    async def _stop_serial(self, run: _StartRun) -> None:
        task, run.serial_task = run.serial_task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _persist(self, workspace: Workspace) -> None:
        try:
            await self._repository.save(workspace)
        except WorkspaceStoreError as e:
            logger.error(
                "Failed to persist workspace",
                extra={"workspace_id": workspace.id, "status": workspace.status.value, **e.context},
            )
