"""Tests for serial console cleanup, hint classification and TCP capture."""

from __future__ import annotations

import asyncio

import pytest

from clawspace.models import StageKey, StageState
from clawspace.serial_diagnostics import (
    SerialDiagnostics,
    SerialHintClassifier,
    StageHint,
    normalize_serial_line,
    strip_ansi,
)
from tests.conftest import free_port

# ============================================================================
# Line cleanup
# ============================================================================


class TestStripAnsi:
    def test_csi_color(self) -> None:
        assert strip_ansi("\x1b[1;32mOK\x1b[0m done") == "OK done"

    def test_osc_title_bel(self) -> None:
        assert strip_ansi("\x1b]0;title\adata") == "data"

    def test_osc_title_st(self) -> None:
        assert strip_ansi("\x1b]0;title\x1b\\data") == "data"

    def test_two_char_escape(self) -> None:
        assert strip_ansi("a\x1bcb") == "ab"

    def test_trailing_escape(self) -> None:
        assert strip_ansi("abc\x1b") == "abc"


class TestNormalizeSerialLine:
    @pytest.mark.parametrize("line", ["", "   ", "[0a1b2c]", "\x1b[0m"])
    def test_dropped(self, line: str) -> None:
        assert normalize_serial_line(line) == ""

    def test_bracketed_text_kept(self) -> None:
        assert normalize_serial_line("[  OK  ] Started sshd") == "[  OK  ] Started sshd"

    def test_truncated(self) -> None:
        assert len(normalize_serial_line("x" * 1000)) == 360


# ============================================================================
# Classifier
# ============================================================================


class TestClassifier:
    def test_updates_fire_once(self) -> None:
        classifier = SerialHintClassifier()
        first = classifier.classify("Installing: curl")
        second = classifier.classify("Downloading packages")
        assert first == [StageHint(StageKey.UPDATES, StageState.IN_PROGRESS, "Applying package updates inside VM...")]
        assert second == []

    def test_env_markers(self) -> None:
        hints = SerialHintClassifier().classify("writing /opt/rauskuclaw/.env")
        assert [h.stage for h in hints] == [StageKey.ENV]

    def test_repository_setup_shares_env_stage(self) -> None:
        classifier = SerialHintClassifier()
        classifier.classify("runtime env check")
        assert classifier.classify("repository setup: cloning") == []

    def test_docker_marker(self) -> None:
        hints = SerialHintClassifier().classify("Starting RauskuClaw Docker stack")
        assert hints[0].stage is StageKey.DOCKER

    def test_holvi_started(self) -> None:
        hints = SerialHintClassifier().classify("HOLVI stack started")
        assert [(h.stage, h.state) for h in hints] == [
            (StageKey.HOLVI, StageState.IN_PROGRESS),
            (StageKey.HOLVI, StageState.SUCCESS),
        ]

    def test_holvi_conclusions_are_not_deduplicated(self) -> None:
        classifier = SerialHintClassifier()
        classifier.classify("holvi bootstrap")
        assert classifier.classify("holvi stack failed") == [
            StageHint(StageKey.HOLVI, StageState.FAILED, "HOLVI stack failed to start.")
        ]

    def test_holvi_disabled(self) -> None:
        hints = SerialHintClassifier().classify("holvi disabled")
        assert hints[-1].state is StageState.WARNING

    def test_unrelated_line(self) -> None:
        assert SerialHintClassifier().classify("Reached target Multi-User System.") == []


# ============================================================================
# TCP capture
# ============================================================================


async def serve_once(payload: list[bytes]) -> tuple[asyncio.Server, int]:
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        for chunk in payload:
            writer.write(chunk)
            await writer.drain()
        writer.close()
        await writer.wait_closed()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


class TestCapture:
    async def test_streams_lines_and_hints(self) -> None:
        logs: list[str] = []
        hints: list[StageHint] = []
        server, port = await serve_once(
            [
                b"\x1b[32mcloud-init\x1b[0m starting\r\n",
                b"Installing: git\n[deadbeef]\nStarting rauskuclaw ",
                b"docker stack\n",
                b"caf\xc3",
                b"\xa9 ok\n",
            ]
        )
        async with server:
            await SerialDiagnostics(logs.append, hints.append).capture(port)

        assert logs == [
            "[serial] cloud-init starting",
            "[serial] Installing: git",
            "[serial] Starting rauskuclaw docker stack",
            "[serial] café ok",
            "[serial] stream closed by guest or QEMU.",
        ]
        assert [h.stage for h in hints] == [StageKey.UPDATES, StageKey.DOCKER]

    async def test_connect_failure_is_logged(self) -> None:
        logs: list[str] = []
        await SerialDiagnostics(logs.append, lambda hint: None).capture(free_port())
        assert len(logs) == 1
        assert logs[0].startswith("[serial] diagnostics capture stopped:")

    async def test_cancellation_ends_capture(self) -> None:
        release = asyncio.Event()

        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            writer.write(b"booting\n")
            await writer.drain()
            await release.wait()
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        logs: list[str] = []
        async with server:
            task = asyncio.create_task(SerialDiagnostics(logs.append, lambda hint: None).capture(port))
            while not logs:
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            release.set()

        assert logs == ["[serial] booting"]
