"""Tests for ReadinessProbes.

The command channel is a FakeChannel keyed on command fragments; TCP
checks either use real loopback sockets or a patched ``wait_port``.
"""

from __future__ import annotations

import socket

import pytest

from clawspace.config import StartupConfig
from clawspace.models import CommandResult, ErrorKind, Workspace
from clawspace.readiness import (
    ReadinessProbes,
    parse_storage_probe,
    runtime_env_hint,
    runtime_env_probe_command,
    shell_quote_path,
)
from clawspace.secrets import MappingSecretSource
from tests.conftest import FakeChannel

OK = CommandResult(True, "")
TRANSIENT = CommandResult(False, "SSH transient error: Connection reset by peer", ErrorKind.TRANSIENT)
MISMATCH = CommandResult(False, "reason=hostkey_mismatch; SSH host key mismatch", ErrorKind.HOST_KEY_MISMATCH)

HEALTHY_TABLE = "\n".join(
    f"{name}-1|Up 1 minute"
    for name in ("rauskuclaw-api", "rauskuclaw-worker", "rauskuclaw-ollama", "rauskuclaw-ui-v2", "rauskuclaw-ui")
)


def probes_for(channel: FakeChannel, config: StartupConfig) -> ReadinessProbes:
    return ReadinessProbes(channel, config)  # type: ignore[arg-type]


def ports_up(monkeypatch: pytest.MonkeyPatch, probes: ReadinessProbes, *ports: int) -> list[int]:
    """Patch wait_port so only ``ports`` answer; returns the list of probed ports."""
    probed: list[int] = []

    async def fake_wait_port(port: int, timeout: float) -> bool:
        probed.append(port)
        return port in ports

    monkeypatch.setattr(probes, "wait_port", fake_wait_port)
    return probed


# ============================================================================
# Pure helpers
# ============================================================================


class TestHelpers:
    def test_shell_quote_path(self) -> None:
        assert shell_quote_path("/opt/it's") == "/opt/it'\\''s"

    def test_env_probe_targets_repo_dir(self) -> None:
        assert "'/srv/claw/.env'" in runtime_env_probe_command("/srv/claw")

    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            (None, "Runtime .env not ready yet."),
            ("status=missing-file", "Runtime .env missing. Action:"),
            ("status=missing-secret", "Runtime .env missing API_KEY/API_TOKEN."),
            ("status=placeholder-secret", "Runtime .env has placeholder API secrets."),
            ("cat: Permission denied", "Permission denied while reading runtime .env."),
            ("  something else  ", "something else"),
        ],
    )
    def test_runtime_env_hint(self, message: str | None, expected: str) -> None:
        assert runtime_env_hint(message).startswith(expected)


class TestParseStorageProbe:
    def test_writable(self) -> None:
        diagnosis = parse_storage_probe("root_mode=rw opts=rw,relatime\nwrite_probe=ok err=\ndf_k=x\ndf_i=y")
        assert not diagnosis.has_issue

    def test_empty_output(self) -> None:
        assert not parse_storage_probe("").has_issue

    def test_read_only_root(self) -> None:
        diagnosis = parse_storage_probe("root_mode=ro opts=ro\nwrite_probe=ok err=")
        assert diagnosis.has_issue
        assert diagnosis.message.startswith("Read-only file system | root_mode=ro")

    def test_disk_full(self) -> None:
        diagnosis = parse_storage_probe(
            "root_mode=rw opts=rw\nwrite_probe=fail err=sh: can't create: No space left on device\ndf_k=/dev/vda1 100%"
        )
        assert diagnosis.has_issue
        assert diagnosis.message.startswith("No space left on device")
        assert "df_k=/dev/vda1 100%" in diagnosis.message


# ============================================================================
# TCP endpoints
# ============================================================================


class TestTcpEndpoints:
    async def test_wait_port_real_socket(self, listening_socket: socket.socket, fast_config: StartupConfig) -> None:
        probes = probes_for(FakeChannel(), fast_config)
        assert await probes.wait_port(listening_socket.getsockname()[1], 1.0) is True

    async def test_wait_api(
        self, monkeypatch: pytest.MonkeyPatch, fast_config: StartupConfig, workspace: Workspace
    ) -> None:
        probes = probes_for(FakeChannel(), fast_config)
        ports_up(monkeypatch, probes, 3011)
        result = await probes.wait_api(workspace)
        assert result.success
        assert result.message == "API is reachable on 127.0.0.1:3011."

    async def test_wait_api_unreachable(
        self, monkeypatch: pytest.MonkeyPatch, fast_config: StartupConfig, workspace: Workspace
    ) -> None:
        probes = probes_for(FakeChannel(), fast_config)
        ports_up(monkeypatch, probes)
        result = await probes.wait_api(workspace)
        assert not result.success
        assert result.kind is ErrorKind.TIMEOUT
        assert result.message == "API port did not become reachable (127.0.0.1:3011)."

    async def test_web_ui_primary(
        self, monkeypatch: pytest.MonkeyPatch, fast_config: StartupConfig, workspace: Workspace
    ) -> None:
        probes = probes_for(FakeChannel(), fast_config)
        probed = ports_up(monkeypatch, probes, 8080)
        assert (await probes.wait_web_ui(workspace)).success
        assert probed == [8080]

    async def test_web_ui_falls_back_to_ui_v2(
        self, monkeypatch: pytest.MonkeyPatch, fast_config: StartupConfig, workspace: Workspace
    ) -> None:
        probes = probes_for(FakeChannel(), fast_config)
        probed = ports_up(monkeypatch, probes, 3013)
        result = await probes.wait_web_ui(workspace)
        assert result.success
        assert "WebUI-v2" in result.message
        assert probed == [8080, 3013]

    async def test_web_ui_unreachable(
        self, monkeypatch: pytest.MonkeyPatch, fast_config: StartupConfig, workspace: Workspace
    ) -> None:
        probes = probes_for(FakeChannel(), fast_config)
        ports_up(monkeypatch, probes)
        result = await probes.wait_web_ui(workspace)
        assert not result.success
        assert "(8080, 3013)" in result.message


# ============================================================================
# SSH stabilization and repository
# ============================================================================


class TestSshStable:
    async def test_succeeds_after_transient(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("ssh-ready", TRANSIENT, TRANSIENT, CommandResult(True, "ssh-ready"))
        result = await probes_for(channel, fast_config).wait_ssh_stable(workspace)
        assert result.success
        assert len(channel.commands) == 3

    async def test_host_key_mismatch_stops_immediately(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("ssh-ready", MISMATCH)
        result = await probes_for(channel, fast_config).wait_ssh_stable(workspace)
        assert not result.success
        assert result.kind is ErrorKind.HOST_KEY_MISMATCH
        assert len(channel.commands) == 1

    async def test_rejected_key_stops_immediately(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        denied = CommandResult(False, "SSH authentication failed: Permission denied", ErrorKind.CONFIG)
        channel = FakeChannel().on("ssh-ready", denied)
        result = await probes_for(channel, fast_config).wait_ssh_stable(workspace)
        assert result.kind is ErrorKind.CONFIG
        assert len(channel.commands) == 1

    async def test_timeout_keeps_last_kind(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("ssh-ready", TRANSIENT)
        result = await probes_for(channel, fast_config).wait_ssh_stable(workspace)
        assert not result.success
        assert result.kind is ErrorKind.TRANSIENT
        assert result.message.startswith("SSH became reachable but command channel did not stabilize:")


class TestRepository:
    async def test_available(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("repo-ok", CommandResult(True, "repo-ok"))
        result = await probes_for(channel, fast_config).wait_repository(workspace)
        assert result.success
        assert result.message == "Repository looks available."

    async def test_timeout_includes_cloud_init_status(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = (
            FakeChannel()
            .on("repo-ok", CommandResult(False, "exit 7", ErrorKind.COMMAND_FAILED))
            .on("cloud-init status", CommandResult(True, "status: running"))
        )
        result = await probes_for(channel, fast_config).wait_repository(workspace)
        assert not result.success
        assert result.kind is ErrorKind.TIMEOUT
        assert result.message == "Repository not ready after wait window: exit 7 | cloud-init: status: running"

    async def test_fatal_kind_returned_at_once(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("repo-ok", MISMATCH)
        result = await probes_for(channel, fast_config).wait_repository(workspace)
        assert result.kind is ErrorKind.HOST_KEY_MISMATCH
        assert len(channel.commands) == 1


# ============================================================================
# Runtime .env
# ============================================================================


class TestRuntimeEnv:
    WRITABLE = CommandResult(True, "root_mode=rw opts=rw\nwrite_probe=ok err=")
    READ_ONLY = CommandResult(True, "root_mode=ro opts=ro\nwrite_probe=fail err=Read-only file system")

    async def test_ready(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("env-ok", CommandResult(True, "env-ok"))
        result = await probes_for(channel, fast_config).wait_runtime_env(workspace)
        assert result.success
        assert result.message == "Runtime .env is ready."

    async def test_placeholder_is_healed(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = (
            FakeChannel()
            .on("write_probe", self.WRITABLE)
            .on("env-healed", CommandResult(True, "env-healed"))
            .on(
                "env-ok",
                CommandResult(False, "status=placeholder-secret", ErrorKind.COMMAND_FAILED),
                CommandResult(True, "env-ok"),
            )
        )
        lines: list[str] = []
        result = await probes_for(channel, fast_config).wait_runtime_env(workspace, lines.append)
        assert result.success
        assert "Env warmup: auto-healed API_KEY/API_TOKEN in runtime .env." in lines
        assert any("env-healed" in command for command in channel.commands)

    async def test_storage_issue_fails_immediately(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = (
            FakeChannel()
            .on("write_probe", self.READ_ONLY)
            .on("env-ok", CommandResult(False, "status=missing-file", ErrorKind.COMMAND_FAILED))
        )
        result = await probes_for(channel, fast_config).wait_runtime_env(workspace)
        assert not result.success
        assert result.message.startswith("Guest filesystem issue detected: Read-only file system")

    async def test_timeout_carries_hint(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = (
            FakeChannel()
            .on("write_probe", self.WRITABLE)
            .on("env-ok", CommandResult(False, "status=missing-file", ErrorKind.COMMAND_FAILED))
        )
        lines: list[str] = []
        result = await probes_for(channel, fast_config).wait_runtime_env(workspace, lines.append)
        assert not result.success
        assert result.kind is ErrorKind.TIMEOUT
        assert result.message.startswith("Runtime .env missing or incomplete after wait window: Runtime .env missing.")
        assert lines[0].startswith("Env warmup: Runtime .env missing.")


# ============================================================================
# cloud-init
# ============================================================================


class TestCloudInit:
    async def test_done(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("cloud-init status", CommandResult(True, "status: done"))
        result = await probes_for(channel, fast_config).wait_cloud_init(workspace)
        assert result.message == "cloud-init final stage completed."

    async def test_running_then_done(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on(
            "cloud-init status",
            CommandResult(True, "status: running"),
            TRANSIENT,
            CommandResult(True, "status: done"),
        )
        lines: list[str] = []
        result = await probes_for(channel, fast_config).wait_cloud_init(workspace, lines.append)
        assert result.success
        assert lines == ["cloud-init status: status: running"]

    async def test_unrecognized_status_counts_as_complete(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("cloud-init status", CommandResult(True, ""))
        result = await probes_for(channel, fast_config).wait_cloud_init(workspace)
        assert result.message == "cloud-init status probe completed."

    async def test_command_failure(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("cloud-init status", CommandResult(False, "boom", ErrorKind.UNEXPECTED))
        result = await probes_for(channel, fast_config).wait_cloud_init(workspace)
        assert not result.success
        assert result.kind is ErrorKind.UNEXPECTED
        assert result.message == "cloud-init status probe failed: boom"

    async def test_timeout_mentions_transient(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("cloud-init status", TRANSIENT)
        result = await probes_for(channel, fast_config).wait_cloud_init(workspace)
        assert result.kind is ErrorKind.TIMEOUT
        assert "Last transient SSH error" in result.message

    async def test_tail(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("cloud-init-output.log", CommandResult(True, "line 1\nline 2"))
        assert await probes_for(channel, fast_config).cloud_init_tail(workspace) == "line 1\nline 2"

    async def test_tail_unavailable(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("cloud-init-output.log", TRANSIENT)
        assert await probes_for(channel, fast_config).cloud_init_tail(workspace) is None


# ============================================================================
# Docker stack
# ============================================================================


class TestDockerStack:
    async def test_healthy(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("ps --format", CommandResult(True, HEALTHY_TABLE))
        result = await probes_for(channel, fast_config).wait_docker_stack(workspace)
        assert result.success
        assert "(5/5 expected containers)" in result.message

    async def test_daemon_not_ready_times_out(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("ps --format", CommandResult(False, "docker-unavailable", ErrorKind.COMMAND_FAILED))
        lines: list[str] = []
        result = await probes_for(channel, fast_config).wait_docker_stack(workspace, lines.append)
        assert not result.success
        assert result.kind is ErrorKind.TIMEOUT
        assert result.message == "Docker stack did not become healthy in time: Docker daemon is not ready yet."
        assert lines[0] == "Docker warmup: Docker daemon is not ready yet."

    async def test_missing_container(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        table = HEALTHY_TABLE.replace("rauskuclaw-worker-1|Up 1 minute\n", "")
        channel = FakeChannel().on("ps --format", CommandResult(True, table))
        result = await probes_for(channel, fast_config).check_docker_stack(workspace)
        assert result.message == "Docker missing containers: rauskuclaw-worker."


# ============================================================================
# Secret manager and connection test
# ============================================================================


class TestSecretManager:
    async def test_keys_and_proxy(
        self, monkeypatch: pytest.MonkeyPatch, fast_config: StartupConfig, workspace: Workspace
    ) -> None:
        probes = probes_for(FakeChannel(), fast_config)
        probed = ports_up(monkeypatch, probes, workspace.ports.holvi_proxy)
        source = MappingSecretSource({"API_KEY": "k", "API_TOKEN": "t"})
        result = await probes.wait_secret_manager(workspace, source)
        assert result.success
        assert result.message.startswith("Secrets loaded from static.")
        assert probed == [3011 + 5088]

    async def test_partial_keys(
        self, monkeypatch: pytest.MonkeyPatch, fast_config: StartupConfig, workspace: Workspace
    ) -> None:
        probes = probes_for(FakeChannel(), fast_config)
        probed = ports_up(monkeypatch, probes, workspace.ports.holvi_proxy)
        result = await probes.wait_secret_manager(workspace, MappingSecretSource({"API_KEY": "k"}))
        assert not result.success
        assert result.kind is ErrorKind.CONFIG
        assert "partial secret set (1/2)" in result.message
        assert probed == []

    async def test_proxy_unreachable(
        self, monkeypatch: pytest.MonkeyPatch, fast_config: StartupConfig, workspace: Workspace
    ) -> None:
        probes = probes_for(FakeChannel(), fast_config)
        ports_up(monkeypatch, probes)
        source = MappingSecretSource({"API_KEY": "k", "API_TOKEN": "t"})
        result = await probes.wait_secret_manager(workspace, source)
        assert result.kind is ErrorKind.TIMEOUT
        assert "Secret proxy did not become reachable (127.0.0.1:8099)" in result.message


class TestConnection:
    async def test_passes(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("connection-ok", CommandResult(True, "connection-ok"))
        assert (await probes_for(channel, fast_config).check_connection(workspace)).success

    async def test_unexpected_output(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("connection-ok", OK)
        result = await probes_for(channel, fast_config).check_connection(workspace)
        assert not result.success
        assert result.message == "Connection test failed: no output"
        assert result.kind is ErrorKind.COMMAND_FAILED

    async def test_channel_failure_keeps_kind(self, fast_config: StartupConfig, workspace: Workspace) -> None:
        channel = FakeChannel().on("connection-ok", TRANSIENT)
        result = await probes_for(channel, fast_config).check_connection(workspace)
        assert result.kind is ErrorKind.TRANSIENT
        assert "Connection reset by peer" in result.message
