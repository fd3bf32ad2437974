"""Tests for the clawspace CLI.

Uses click's CliRunner with CLAWSPACE_DATA_DIR pointing at tmp_path.  No
command here boots a VM.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from clawspace.cli import (
    EXIT_CANCELLED,
    EXIT_FAILURE,
    EXIT_SUCCESS,
    exit_code_for,
    format_error,
    format_result_json,
    main,
)
from clawspace.models import ReasonCode, StartupOutcome, StartupResult, Workspace
from clawspace.trust_store import TrustStore

FP = "ab" * 32


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "data"
    monkeypatch.setenv("CLAWSPACE_DATA_DIR", str(path))
    return path


@pytest.fixture
def images(tmp_path: Path) -> dict[str, Path]:
    files = {name: tmp_path / name for name in ("disk.qcow2", "seed.iso", "id_ed25519")}
    for path in files.values():
        path.write_bytes(b"")
    return files


def add(runner: CliRunner, images: dict[str, Path], name: str, *extra: str):
    return runner.invoke(
        main,
        [
            "add",
            name,
            "--disk",
            str(images["disk.qcow2"]),
            "--seed",
            str(images["seed.iso"]),
            "--key",
            str(images["id_ed25519"]),
            *extra,
        ],
    )


# ============================================================================
# Helpers
# ============================================================================


class TestHelpers:
    @pytest.mark.parametrize(
        ("outcome", "code"),
        [
            (StartupOutcome.SUCCESS, EXIT_SUCCESS),
            (StartupOutcome.DEGRADED, EXIT_SUCCESS),
            (StartupOutcome.FAILED, EXIT_FAILURE),
            (StartupOutcome.CANCELLED, EXIT_CANCELLED),
        ],
    )
    def test_exit_code_for(self, outcome: StartupOutcome, code: int) -> None:
        assert exit_code_for(StartupResult(outcome, "m")) == code

    def test_format_error_suggestions(self) -> None:
        text = format_error("No free port slot", "range exhausted", ["Widen the range"])
        assert "range exhausted" in text
        assert "• Widen the range" in text

    def test_format_result_json(self, workspace: Workspace) -> None:
        result = StartupResult(StartupOutcome.FAILED, "reason=env_missing; x", ReasonCode.ENV_MISSING, ("w",))
        data = json.loads(format_result_json(workspace, result))
        assert data == {
            "workspace": "ws1-name",
            "outcome": "failed",
            "message": "reason=env_missing; x",
            "reason": "env_missing",
            "warnings": ["w"],
            "status": "stopped",
        }


# ============================================================================
# Commands
# ============================================================================


class TestWorkspaceCommands:
    def test_list_empty(self, data_dir: Path) -> None:
        result = CliRunner().invoke(main, ["list"])
        assert result.exit_code == 0
        assert "No workspaces defined." in result.output

    def test_add_allocates_slots(self, data_dir: Path, images: dict[str, Path]) -> None:
        runner = CliRunner()
        first = add(runner, images, "dev")
        second = add(runner, images, "ci", "--cpus", "4", "--secret-manager")

        assert first.exit_code == 0, first.output
        assert "SSH on port 2222" in first.output
        assert "SSH on port 2322" in second.output

        listed = json.loads(runner.invoke(main, ["list", "--json"]).output)
        assert [w["name"] for w in listed] == ["dev", "ci"]
        assert listed[1]["cpu_cores"] == 4
        assert listed[1]["secret_manager_enabled"] is True
        assert listed[1]["ports"]["api"] == 3111

    def test_add_duplicate_name(self, data_dir: Path, images: dict[str, Path]) -> None:
        runner = CliRunner()
        add(runner, images, "dev")
        result = add(runner, images, "dev")
        assert result.exit_code == 2
        assert "already exists" in result.output

    def test_add_requires_existing_files(self, data_dir: Path, tmp_path: Path) -> None:
        result = CliRunner().invoke(
            main,
            ["add", "dev", "--disk", str(tmp_path / "nope"), "--seed", "x", "--key", "y"],
        )
        assert result.exit_code == 2

    def test_list_table(self, data_dir: Path, images: dict[str, Path]) -> None:
        runner = CliRunner()
        add(runner, images, "dev")
        result = runner.invoke(main, ["list"])
        assert result.exit_code == 0
        assert "dev" in result.output
        assert "ssh=2222 web=8080 api=3011" in result.output

    def test_allocate_ports_preview(self, data_dir: Path, images: dict[str, Path]) -> None:
        runner = CliRunner()
        first = json.loads(runner.invoke(main, ["allocate-ports", "--json"]).output)
        assert first["ssh"] == 2222

        add(runner, images, "dev")
        second = runner.invoke(main, ["allocate-ports"])
        assert second.exit_code == 0
        assert "SSH          2322" in second.output
        assert json.loads(runner.invoke(main, ["list", "--json"]).output)[0]["name"] == "dev"

    def test_stop_unknown_workspace(self, data_dir: Path) -> None:
        result = CliRunner().invoke(main, ["stop", "ghost"])
        assert result.exit_code == 2
        assert "Unknown workspace: ghost" in result.output

    def test_version(self) -> None:
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "clawspace" in result.output


class TestTrustCommands:
    def test_trusted_hosts_empty(self, data_dir: Path) -> None:
        result = CliRunner().invoke(main, ["trusted-hosts"])
        assert "No pinned host keys." in result.output

    def test_trusted_hosts_and_forget(self, data_dir: Path) -> None:
        TrustStore(data_dir / "known-hosts.json").remember("127.0.0.1", 2222, "ssh-ed25519", FP)
        runner = CliRunner()

        listed = runner.invoke(main, ["trusted-hosts", "--json"])
        assert json.loads(listed.output)["127.0.0.1:2222"]["fingerprint_hex"] == FP

        forgot = runner.invoke(main, ["forget-host", "2222"])
        assert "Forgot host key for 127.0.0.1:2222." in forgot.output

        again = runner.invoke(main, ["forget-host", "2222"])
        assert "No pinned host key for 127.0.0.1:2222." in again.output

    def test_forget_host_rejects_bad_port(self, data_dir: Path) -> None:
        result = CliRunner().invoke(main, ["forget-host", "0"])
        assert result.exit_code == 2
