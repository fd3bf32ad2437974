"""Pinned SSH host keys (trust on first use).

Each endpoint ``host:port`` moves from Unknown to Trusted the first time a
session presents a key.  Later sessions must present the same algorithm and
fingerprint.  A different key is a mismatch and is never re-pinned
automatically; an operator must ``forget`` the endpoint first.

The store is a JSON file rewritten atomically (temp file, delete, rename).
Every read-modify-write holds a threading lock because asyncssh invokes the
host-key callback synchronously from inside the connection.
"""

from __future__ import annotations

import contextlib
import json
import threading
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import TypeAdapter, ValidationError

from clawspace import constants
from clawspace._logging import get_logger
from clawspace.exceptions import HostKeyMismatchError
from clawspace.models import TrustRecord, TrustVerdict

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)

_RECORDS_ADAPTER: TypeAdapter[dict[str, TrustRecord]] = TypeAdapter(dict[str, TrustRecord])


def endpoint_key(host: str, port: int) -> str:
    """Normalise an endpoint: lowercase host (default loopback), port default 22."""
    normalized_host = host.strip().lower() if host and host.strip() else constants.LOOPBACK_HOST
    normalized_port = port if port > 0 else 22
    return f"{normalized_host}:{normalized_port}"


class TrustStore:
    """File-backed map of endpoint -> TrustRecord.

    Attributes:
        path: JSON file holding the records
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def get(self, host: str, port: int) -> TrustRecord | None:
        with self._lock:
            return self._load_unlocked().get(endpoint_key(host, port))

    def records(self) -> dict[str, TrustRecord]:
        with self._lock:
            return self._load_unlocked()

    def verify(self, host: str, port: int, algorithm: str, fingerprint: str) -> TrustVerdict:
        """Compare a presented key against the pin.  Read only."""
        record = self.get(host, port)
        if record is None:
            return TrustVerdict.UNKNOWN
        return TrustVerdict.TRUSTED if _matches(record, algorithm, fingerprint) else TrustVerdict.MISMATCHED

    def pin(self, host: str, port: int, algorithm: str, fingerprint: str) -> TrustVerdict:
        """TOFU entry point called for every presented host key.

        Returns UNKNOWN when the key was just pinned, TRUSTED when it matched
        (last-seen bumped), MISMATCHED when it differs (store unchanged).
        """
        key = endpoint_key(host, port)
        algorithm = algorithm.strip()
        fingerprint = fingerprint.strip().lower()
        now = datetime.now(UTC)

        with self._lock:
            records = self._load_unlocked()
            existing = records.get(key)
            if existing is None:
                records[key] = TrustRecord(
                    algorithm=algorithm,
                    fingerprint_hex=fingerprint,
                    first_seen_utc=now,
                    last_seen_utc=now,
                )
                self._save_unlocked(records)
                logger.info(
                    "Pinned SSH host key on first use",
                    extra={"endpoint": key, "algorithm": algorithm, "fingerprint": fingerprint},
                )
                return TrustVerdict.UNKNOWN

            if not _matches(existing, algorithm, fingerprint):
                logger.warning(
                    "SSH host key mismatch",
                    extra={
                        "endpoint": key,
                        "expected": (existing.algorithm, existing.fingerprint_hex),
                        "presented": (algorithm, fingerprint),
                    },
                )
                return TrustVerdict.MISMATCHED

            records[key] = TrustRecord(
                algorithm=algorithm or existing.algorithm,
                fingerprint_hex=fingerprint or existing.fingerprint_hex,
                first_seen_utc=existing.first_seen_utc,
                last_seen_utc=now,
            )
            self._save_unlocked(records)
            return TrustVerdict.TRUSTED

    def remember(self, host: str, port: int, algorithm: str, fingerprint: str) -> None:
        """Pin a key explicitly.

        Raises:
            HostKeyMismatchError: A different key is already pinned
        """
        if self.pin(host, port, algorithm, fingerprint) is TrustVerdict.MISMATCHED:
            raise self.mismatch_error(host, port, algorithm.strip(), fingerprint.strip())

    def forget(self, host: str, port: int) -> bool:
        """Return the endpoint to Unknown.  False if nothing was pinned."""
        key = endpoint_key(host, port)
        with self._lock:
            records = self._load_unlocked()
            if records.pop(key, None) is None:
                return False
            self._save_unlocked(records)
        logger.info("Forgot SSH host key", extra={"endpoint": key})
        return True

    def mismatch_error(self, host: str, port: int, algorithm: str, fingerprint: str) -> HostKeyMismatchError:
        record = self.get(host, port)
        expected = (record.algorithm, record.fingerprint_hex) if record else ("", "")
        return HostKeyMismatchError(endpoint_key(host, port), expected, (algorithm, fingerprint.lower()))

    def _load_unlocked(self) -> dict[str, TrustRecord]:
        """Load records (must hold lock).  A corrupt file reads as empty."""
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return {}
        try:
            records = _RECORDS_ADAPTER.validate_json(raw)
        except ValidationError as e:
            logger.warning(
                "Trust store unreadable, treating as empty",
                extra={"path": str(self.path), "error": str(e)},
            )
            return {}
        return {key.lower(): record for key, record in records.items()}

    def _save_unlocked(self, records: dict[str, TrustRecord]) -> None:
        """Atomic write: temp file, delete old, rename (must hold lock)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(_RECORDS_ADAPTER.dump_python(records, mode="json"), indent=2)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
        tmp_path.rename(self.path)


def _matches(record: TrustRecord, algorithm: str, fingerprint: str) -> bool:
    return (
        record.algorithm.lower() == algorithm.strip().lower()
        and record.fingerprint_hex.lower() == fingerprint.strip().lower()
    )
