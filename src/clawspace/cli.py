"""Command-line interface for clawspace.

Usage:
    clawspace add dev --disk dev.qcow2 --seed seed.iso --key ~/.ssh/id_ed25519
    clawspace list
    clawspace allocate-ports
    clawspace start dev
    clawspace stop dev
    clawspace trusted-hosts
    clawspace forget-host 2222
"""

from __future__ import annotations

import asyncio
import json
import sys
import uuid
from pathlib import Path
from typing import NoReturn

import click

from clawspace import __version__
from clawspace._logging import configure_logging
from clawspace.command_channel import CommandChannel
from clawspace.config import StartupConfig
from clawspace.exceptions import PortExhaustedError, WorkspaceError
from clawspace.models import LogEvent, StageEvent, StageState, StartupOutcome, StartupResult, Workspace
from clawspace.orchestrator import WorkspaceStartupOrchestrator
from clawspace.port_arbiter import PortArbiter
from clawspace.secrets import EnvironmentSecretSource
from clawspace.settings import Settings
from clawspace.ssh_session import SshSessionFactory
from clawspace.trust_store import TrustStore
from clawspace.vm_process import QemuLauncher
from clawspace.workspace_store import WorkspaceStore

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CLI_ERROR = 2
EXIT_WORKSPACE_ERROR = 125
EXIT_CANCELLED = 130

_STATE_COLORS: dict[StageState, str] = {
    StageState.IN_PROGRESS: "cyan",
    StageState.SUCCESS: "green",
    StageState.WARNING: "yellow",
    StageState.FAILED: "red",
}


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def format_result_json(workspace: Workspace, result: StartupResult) -> str:
    output = {
        "workspace": workspace.name or workspace.id,
        "outcome": result.outcome.value,
        "message": result.message,
        "reason": result.reason.value if result.reason else None,
        "warnings": list(result.warnings),
        "status": workspace.status.value,
    }
    return json.dumps(output, indent=2)


def print_progress(event: StageEvent | LogEvent) -> None:
    """Progress listener writing stage transitions and log lines to stderr."""
    if isinstance(event, StageEvent):
        color = _STATE_COLORS.get(event.state)
        label = click.style(f"[{event.stage.value}] {event.state.value}", fg=color, bold=True)
        click.echo(f"{label} {event.message}", err=True)
    else:
        click.echo(click.style(event.message, dim=True), err=True)


def exit_code_for(result: StartupResult) -> int:
    match result.outcome:
        case StartupOutcome.SUCCESS | StartupOutcome.DEGRADED:
            return EXIT_SUCCESS
        case StartupOutcome.CANCELLED:
            return EXIT_CANCELLED
        case _:
            return EXIT_FAILURE


async def _registered_arbiter(settings: Settings, store: WorkspaceStore) -> PortArbiter:
    """Arbiter that already knows every stored workspace's slot."""
    arbiter = PortArbiter(settings.port_range_start, settings.port_range_end)
    for workspace in await store.list_workspaces():
        if workspace.ports is not None:
            arbiter.allocate_ports(workspace.ports)
    return arbiter


def build_orchestrator(
    settings: Settings,
    store: WorkspaceStore,
    arbiter: PortArbiter,
) -> WorkspaceStartupOrchestrator:
    config = StartupConfig(
        warmup_max_attempts=settings.warmup_max_attempts,
        warmup_interval_seconds=settings.warmup_interval_seconds,
    )
    session_factory = SshSessionFactory(TrustStore(settings.trust_store_path))
    channel = CommandChannel(
        session_factory,
        attempts=config.ssh_command_attempts,
        retry_delay=config.ssh_retry_delay_seconds,
    )
    return WorkspaceStartupOrchestrator(
        arbiter=arbiter,
        launcher=QemuLauncher(settings),
        channel=channel,
        repository=store,
        config=config,
        secret_source=EnvironmentSecretSource(),
    )


async def _lookup(store: WorkspaceStore, name: str) -> Workspace:
    workspace = await store.find(name)
    if workspace is None:
        raise click.UsageError(f"Unknown workspace: {name}")
    return workspace


# =============================================================================
# Async command bodies
# =============================================================================


async def add_workspace(
    settings: Settings,
    name: str,
    disk: Path,
    seed: Path,
    key: Path,
    username: str | None,
    repo_dir: str | None,
    memory: int,
    cpus: int,
    secret_manager: bool,
) -> Workspace:
    store = WorkspaceStore(settings.workspace_store_path)
    if await store.find(name) is not None:
        raise click.UsageError(f"Workspace '{name}' already exists.")

    arbiter = await _registered_arbiter(settings, store)
    fields: dict[str, object] = {}
    if username:
        fields["username"] = username
    if repo_dir:
        fields["repo_target_dir"] = repo_dir

    workspace = Workspace(
        id=uuid.uuid4().hex[:12],
        name=name,
        disk_path=disk.resolve(),
        seed_iso_path=seed.resolve(),
        ssh_private_key_path=key.expanduser().resolve(),
        memory_mb=memory,
        cpu_cores=cpus,
        secret_manager_enabled=secret_manager,
        ports=arbiter.allocate_ports(),
        **fields,
    )
    await store.save(workspace)
    return workspace


async def start_workspace(settings: Settings, name: str, json_output: bool, port_retry: bool, wait_warmup: bool) -> int:
    store = WorkspaceStore(settings.workspace_store_path)
    workspace = await _lookup(store, name)
    arbiter = await _registered_arbiter(settings, store)
    orchestrator = build_orchestrator(settings, store, arbiter)

    listener = None if json_output else print_progress
    try:
        if port_retry:
            result = await orchestrator.start_with_port_retry(workspace, listener)
        else:
            result = await orchestrator.start(workspace, listener)

        if result.outcome is StartupOutcome.DEGRADED and wait_warmup:
            warmup = orchestrator.warmup.task(workspace.id)
            if warmup is not None:
                await warmup
    finally:
        await orchestrator.aclose()

    if json_output:
        click.echo(format_result_json(workspace, result))
    else:
        color = "green" if result.success else "red"
        click.echo(click.style(result.message, fg=color))
    return exit_code_for(result)


async def stop_workspace(settings: Settings, name: str) -> int:
    store = WorkspaceStore(settings.workspace_store_path)
    workspace = await _lookup(store, name)
    arbiter = await _registered_arbiter(settings, store)
    orchestrator = build_orchestrator(settings, store, arbiter)
    result = await orchestrator.stop(workspace)
    click.echo(result.message)
    return EXIT_SUCCESS if result.success else EXIT_FAILURE


async def list_workspaces(settings: Settings, json_output: bool) -> int:
    workspaces = await WorkspaceStore(settings.workspace_store_path).list_workspaces()
    if json_output:
        click.echo(json.dumps([w.model_dump(mode="json") for w in workspaces], indent=2))
        return EXIT_SUCCESS

    if not workspaces:
        click.echo("No workspaces defined.")
        return EXIT_SUCCESS
    for w in workspaces:
        ports = f"ssh={w.ports.ssh} web={w.ports.web} api={w.ports.api}" if w.ports else "no ports"
        click.echo(f"{w.name or w.id:<20} {w.status.value:<11} {ports}")
    return EXIT_SUCCESS


async def preview_ports(settings: Settings, json_output: bool) -> int:
    """Print the slot the next ``add`` would get, without saving anything."""
    arbiter = await _registered_arbiter(settings, WorkspaceStore(settings.workspace_store_path))
    ports = arbiter.allocate_ports()
    if json_output:
        click.echo(json.dumps(ports.model_dump(mode="json"), indent=2))
        return EXIT_SUCCESS
    for label, port in ports.named_ports():
        click.echo(f"{label:<12} {port}")
    return EXIT_SUCCESS


# =============================================================================
# Click commands
# =============================================================================


def _run(coro) -> NoReturn:
    try:
        exit_code = asyncio.run(coro)
    except WorkspaceError as e:
        click.echo(format_error("Workspace error", e.message), err=True)
        exit_code = EXIT_WORKSPACE_ERROR
    except KeyboardInterrupt:
        exit_code = EXIT_CANCELLED
    sys.exit(exit_code)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="clawspace")
@click.pass_context
def main(ctx: click.Context, verbose: bool, quiet: bool) -> None:
    """Start, stop and inspect local workspace VMs."""
    configure_logging(level="DEBUG" if verbose else None, quiet=quiet)
    ctx.obj = Settings()


@main.command()
@click.argument("name")
@click.option("--disk", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=True)
@click.option("--seed", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=True)
@click.option("--key", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=True)
@click.option("--username", help="Guest user for SSH")
@click.option("--repo-dir", help="Repository checkout inside the guest")
@click.option("-m", "--memory", default=4096, show_default=True, help="Memory in MB")
@click.option("--cpus", default=2, show_default=True, help="Virtual CPUs")
@click.option("--secret-manager", is_flag=True, help="Require the secret manager during start")
@click.pass_obj
def add(
    settings: Settings,
    name: str,
    disk: Path,
    seed: Path,
    key: Path,
    username: str | None,
    repo_dir: str | None,
    memory: int,
    cpus: int,
    secret_manager: bool,
) -> None:
    """Define a workspace and allocate its host ports."""
    try:
        workspace = asyncio.run(
            add_workspace(settings, name, disk, seed, key, username, repo_dir, memory, cpus, secret_manager)
        )
    except PortExhaustedError as e:
        click.echo(
            format_error(
                "No free port slot",
                e.message,
                ["Stop or remove unused workspaces", "Widen CLAWSPACE_PORT_RANGE_END"],
            ),
            err=True,
        )
        sys.exit(EXIT_WORKSPACE_ERROR)
    assert workspace.ports is not None
    click.echo(f"Added workspace '{workspace.name}' ({workspace.id}) with SSH on port {workspace.ports.ssh}.")


@main.command(name="list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def list_command(settings: Settings, json_output: bool) -> NoReturn:
    """List workspaces and their last known status."""
    _run(list_workspaces(settings, json_output))


@main.command(name="allocate-ports")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def allocate_ports(settings: Settings, json_output: bool) -> NoReturn:
    """Show the port slot the next workspace would get."""
    _run(preview_ports(settings, json_output))


@main.command()
@click.argument("name")
@click.option("--json", "json_output", is_flag=True, help="Output the result as JSON")
@click.option("--no-port-retry", is_flag=True, help="Do not remap UI-v2 and retry after a port conflict")
@click.option("--wait-warmup/--no-wait-warmup", default=True, show_default=True, help="Block until SSH warm-up ends")
@click.pass_obj
def start(settings: Settings, name: str, json_output: bool, no_port_retry: bool, wait_warmup: bool) -> NoReturn:
    """Boot a workspace and wait until its services are ready."""
    _run(start_workspace(settings, name, json_output, not no_port_retry, wait_warmup))


@main.command()
@click.argument("name")
@click.pass_obj
def stop(settings: Settings, name: str) -> NoReturn:
    """Shut a workspace down over QMP."""
    _run(stop_workspace(settings, name))


@main.command(name="trusted-hosts")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def trusted_hosts(settings: Settings, json_output: bool) -> None:
    """Show pinned SSH host keys."""
    records = TrustStore(settings.trust_store_path).records()
    if json_output:
        click.echo(json.dumps({k: r.model_dump(mode="json") for k, r in records.items()}, indent=2))
        return
    if not records:
        click.echo("No pinned host keys.")
        return
    for endpoint, record in sorted(records.items()):
        click.echo(f"{endpoint:<22} {record.algorithm:<20} {record.fingerprint_hex}")


@main.command(name="forget-host")
@click.argument("port", type=click.IntRange(1, 65535))
@click.option("--host", default="127.0.0.1", show_default=True)
@click.pass_obj
def forget_host(settings: Settings, port: int, host: str) -> None:
    """Drop the pinned host key for HOST:PORT (after reprovisioning a VM)."""
    if TrustStore(settings.trust_store_path).forget(host, port):
        click.echo(f"Forgot host key for {host}:{port}.")
    else:
        click.echo(f"No pinned host key for {host}:{port}.")


if __name__ == "__main__":
    main()
