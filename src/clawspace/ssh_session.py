"""One-shot SSH sessions validated against the TrustStore.

Each ``run`` opens a fresh connection, lets the TrustStore decide whether the
presented host key is acceptable, runs a single command and disconnects.
asyncssh consults ``validate_host_public_key`` only for keys outside its own
trusted list, so the connection is opened with an empty known-hosts tuple to
route every key through the TrustStore.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import asyncssh

from clawspace import constants
from clawspace._logging import get_logger
from clawspace.models import TrustVerdict

if TYPE_CHECKING:
    from pathlib import Path

    from clawspace.exceptions import HostKeyMismatchError
    from clawspace.trust_store import TrustStore

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class RemoteOutput:
    """Raw result of a remote command."""

    exit_status: int
    stdout: str
    stderr: str


class SessionFactory(Protocol):
    """Anything that can run one remote command per call.

    Raises on connection-layer failure (OSError, TimeoutError,
    asyncssh.Error) and HostKeyMismatchError on a pinned-key mismatch.
    """

    async def run(
        self,
        host: str,
        port: int,
        username: str,
        key_path: Path,
        command: str,
    ) -> RemoteOutput: ...


def fingerprint_hex(key: asyncssh.SSHKey) -> str:
    """Lowercase hex SHA-256 of the public key blob."""
    return hashlib.sha256(key.public_data).hexdigest()


class _TofuClient(asyncssh.SSHClient):
    """Routes host-key validation through the TrustStore.

    The mismatch, if any, is kept on the instance so the caller can raise a
    HostKeyMismatchError instead of asyncssh's generic HostKeyNotVerifiable.
    """

    def __init__(self, trust_store: TrustStore, host: str, port: int) -> None:
        self._trust_store = trust_store
        self._host = host
        self._port = port
        self.mismatch: HostKeyMismatchError | None = None

    def validate_host_public_key(self, host: str, addr: tuple[str, int], port: int, key: asyncssh.SSHKey) -> bool:
        algorithm = key.get_algorithm()
        fingerprint = fingerprint_hex(key)
        verdict = self._trust_store.pin(self._host, self._port, algorithm, fingerprint)
        if verdict is TrustVerdict.MISMATCHED:
            self.mismatch = self._trust_store.mismatch_error(self._host, self._port, algorithm, fingerprint)
            return False
        return True


class SshSessionFactory:
    """asyncssh-backed SessionFactory with TOFU host-key pinning.

    Attributes:
        trust_store: Host-key pins consulted on every connection
        connect_timeout: Seconds allowed for TCP connect plus SSH handshake
        command_timeout: Seconds allowed for the remote command
    """

    def __init__(
        self,
        trust_store: TrustStore,
        *,
        connect_timeout: float = constants.SSH_CONNECT_TIMEOUT_SECONDS,
        command_timeout: float = constants.SSH_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.trust_store = trust_store
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    async def run(
        self,
        host: str,
        port: int,
        username: str,
        key_path: Path,
        command: str,
    ) -> RemoteOutput:
        """Open a session, run ``command``, disconnect.

        Raises:
            HostKeyMismatchError: Presented key differs from the pin
            asyncssh.Error, OSError, TimeoutError: Connection-layer failure
        """
        client = _TofuClient(self.trust_store, host, port)
        try:
            async with asyncssh.connect(
                host,
                port=port,
                username=username,
                client_keys=[str(key_path)],
                known_hosts=([], [], []),
                client_factory=lambda: client,
                connect_timeout=self.connect_timeout,
                agent_path=None,
            ) as conn:
                result = await conn.run(command, check=False, timeout=self.command_timeout)
        except (asyncssh.Error, OSError) as e:
            if client.mismatch is not None:
                raise client.mismatch from e
            raise

        exit_status = result.exit_status if result.exit_status is not None else -1
        logger.debug(
            "SSH command finished",
            extra={"host": host, "port": port, "command": command, "exit_status": exit_status},
        )
        return RemoteOutput(
            exit_status=exit_status,
            stdout=_as_text(result.stdout),
            stderr=_as_text(result.stderr),
        )


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value
