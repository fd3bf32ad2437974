"""Best-effort capture of the guest serial console during startup.

Lines are cleaned up (ANSI sequences, hex-only noise), reported as log
events and fed to a fuzzy classifier that turns provisioning output into
stage hints.  Hints only ever nudge the progress display; the readiness
probes decide outcomes.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import re
from collections.abc import Callable
from dataclasses import dataclass

from clawspace import constants
from clawspace._logging import get_logger
from clawspace.models import StageKey, StageState

logger = get_logger(__name__)

_CSI_FINAL = re.compile(r"[@-~]")
_HEX_ONLY = re.compile(r"[0-9a-fA-F]+")
_LINE_DELIMITERS = re.compile(r"[\r\n]+")


@dataclass(frozen=True, slots=True)
class StageHint:
    stage: StageKey
    state: StageState
    message: str


def strip_ansi(text: str) -> str:
    """Remove CSI (ESC [ ... final) and OSC (ESC ] ... BEL or ESC \\) sequences.

    Any other escape drops the ESC and the character after it.
    """
    out: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch != "\x1b":
            out.append(ch)
            i += 1
            continue
        if i + 1 >= n:
            break
        nxt = text[i + 1]
        if nxt == "[":
            match = _CSI_FINAL.search(text, i + 2)
            i = match.end() if match else n
        elif nxt == "]":
            j = i + 2
            while j < n:
                if text[j] == "\a":
                    j += 1
                    break
                if text[j] == "\x1b" and j + 1 < n and text[j + 1] == "\\":
                    j += 2
                    break
                j += 1
            i = j
        else:
            i += 2
    return "".join(out)


def normalize_serial_line(line: str) -> str:
    """Cleaned line, or "" for lines worth dropping."""
    if not line or not line.strip():
        return ""
    text = strip_ansi(line).replace("\r", " ").replace("\n", " ").strip()
    if not text:
        return ""
    if text.startswith("[") and text.endswith("]"):
        inner = text[1:-1]
        if 0 < len(inner) <= 40 and _HEX_ONLY.fullmatch(inner):
            return ""
    if len(text) > constants.SERIAL_MAX_LINE_CHARS:
        text = text[: constants.SERIAL_MAX_LINE_CHARS]
    return text


class SerialHintClassifier:
    """Maps serial lines to stage hints.  Each in-progress hint fires once per run."""

    def __init__(self) -> None:
        self._sent: set[StageKey] = set()

    def _once(self, stage: StageKey, message: str) -> StageHint | None:
        if stage in self._sent:
            return None
        self._sent.add(stage)
        return StageHint(stage, StageState.IN_PROGRESS, message)

    def classify(self, line: str) -> list[StageHint]:
        text = line.lower()
        hints: list[StageHint | None] = []

        if any(marker in text for marker in ("synchronizing package databases", "upgrading", "installing", "downloading")):
            hints.append(self._once(StageKey.UPDATES, "Applying package updates inside VM..."))
        if any(marker in text for marker in ("env check", "runtime env", ".env")):
            hints.append(self._once(StageKey.ENV, "Preparing runtime .env for Docker stack..."))
        if "starting rauskuclaw docker stack" in text:
            hints.append(
                self._once(StageKey.DOCKER, "RauskuClaw Docker stack startup detected. This might take several minutes.")
            )
        if "repository setup" in text or "git sync" in text:
            hints.append(self._once(StageKey.ENV, "Preparing repository and runtime env inside VM..."))
        if "holvi" in text:
            hints.append(self._once(StageKey.HOLVI, "HOLVI provisioning/startup detected."))

        if "holvi disabled" in text:
            hints.append(StageHint(StageKey.HOLVI, StageState.WARNING, "HOLVI disabled in wizard provisioning."))
        if "holvi stack started" in text:
            hints.append(StageHint(StageKey.HOLVI, StageState.SUCCESS, "HOLVI stack started."))
        if "holvi stack failed" in text:
            hints.append(StageHint(StageKey.HOLVI, StageState.FAILED, "HOLVI stack failed to start."))

        return [hint for hint in hints if hint is not None]


class SerialDiagnostics:
    """Reads a TCP serial stream until EOF, error or cancellation.

    Attributes:
        host: Address the serial port is forwarded to
    """

    def __init__(
        self,
        on_log: Callable[[str], None],
        on_hint: Callable[[StageHint], None],
        *,
        host: str = constants.LOOPBACK_HOST,
        classifier: SerialHintClassifier | None = None,
    ) -> None:
        self._on_log = on_log
        self._on_hint = on_hint
        self._classifier = classifier or SerialHintClassifier()
        self.host = host

    def _emit(self, raw: str) -> None:
        normalized = normalize_serial_line(raw.strip("\r\n \t"))
        if not normalized:
            return
        self._on_log(f"[serial] {normalized}")
        for hint in self._classifier.classify(normalized):
            self._on_hint(hint)

    async def capture(self, port: int) -> None:
        """Stream the serial console.  Cancellation ends it silently."""
        try:
            reader, writer = await asyncio.open_connection(self.host, port)
        except OSError as e:
            self._on_log(f"[serial] diagnostics capture stopped: {e}")
            return

        try:
            await self._pump(reader)
        except (OSError, asyncio.IncompleteReadError) as e:
            self._on_log(f"[serial] diagnostics capture stopped: {e}")
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()

    async def _pump(self, reader: asyncio.StreamReader) -> None:
        loop = asyncio.get_running_loop()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        last_flush = loop.time()

        while True:
            chunk = await reader.read(1024)
            if not chunk:
                self._on_log("[serial] stream closed by guest or QEMU.")
                return
            buffer += decoder.decode(chunk)

            *complete, buffer = _LINE_DELIMITERS.split(buffer)
            for line in complete:
                self._emit(line)
            if complete:
                last_flush = loop.time()

            if (
                len(buffer) > constants.SERIAL_PARTIAL_FLUSH_CHARS
                and loop.time() - last_flush > constants.SERIAL_PARTIAL_FLUSH_SECONDS
            ):
                self._emit(buffer)
                buffer = ""
                last_flush = loop.time()
