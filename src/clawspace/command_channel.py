"""Remote command execution with bounded retry and typed results.

Retry covers connection establishment only.  A command that ran and exited
non-zero is a command failure and is returned on the first attempt.  A
host-key mismatch or a rejected key (CONFIG) is never retried.  Everything
leaving this module is a CommandResult whose ErrorKind was assigned here,
once.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import asyncssh
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from clawspace import constants
from clawspace._logging import get_logger
from clawspace.exceptions import HostKeyMismatchError
from clawspace.models import CommandResult, ErrorKind

if TYPE_CHECKING:
    from clawspace.models import Workspace
    from clawspace.ssh_session import SessionFactory

logger = get_logger(__name__)


def is_transient_connection_issue(message: str | None) -> bool:
    """Does ``message`` describe a connection-layer hiccup rather than a real failure?

    Used by callers deciding whether to surface an alert or keep waiting.
    """
    if not message or not message.strip():
        return False
    text = message.lower()
    return any(phrase in text for phrase in constants.TRANSIENT_SSH_PHRASES)


def _is_auth_failure(exc: BaseException) -> bool:
    """Key rejected by sshd or unreadable locally; retrying cannot help."""
    return isinstance(exc, (asyncssh.PermissionDenied, asyncssh.KeyImportError))


def _is_transient_exception(exc: BaseException) -> bool:
    if isinstance(exc, HostKeyMismatchError) or _is_auth_failure(exc):
        return False
    if isinstance(exc, (OSError, TimeoutError, asyncssh.Error)):
        return True
    return isinstance(exc, Exception) and is_transient_connection_issue(str(exc))


class CommandChannel:
    """Runs one command per call on a workspace guest over SSH.

    Attributes:
        host: Address the guest SSH port is forwarded to
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        attempts: int = constants.SSH_COMMAND_ATTEMPTS,
        retry_delay: float = constants.SSH_RETRY_DELAY_SECONDS,
        host: str = constants.LOOPBACK_HOST,
    ) -> None:
        self._session_factory = session_factory
        self._attempts = attempts
        self._retry_delay = retry_delay
        self.host = host

    async def run_command(self, workspace: Workspace, command: str) -> CommandResult:
        """Execute ``command`` on the guest.

        Cancellation propagates as asyncio.CancelledError; it is never turned
        into a transient failure.
        """
        key_path = workspace.ssh_private_key_path
        if not key_path.is_file():
            return CommandResult(False, f"SSH key file not found: {key_path}", ErrorKind.CONFIG)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._attempts),
                wait=wait_incrementing(start=self._retry_delay, increment=self._retry_delay),
                retry=retry_if_exception(_is_transient_exception),
                before_sleep=before_sleep_log(logger, logging.DEBUG),
                reraise=True,
            ):
                with attempt:
                    output = await self._session_factory.run(
                        self.host,
                        workspace.ssh_port,
                        workspace.username,
                        key_path,
                        command,
                    )
        except HostKeyMismatchError as e:
            return CommandResult(False, e.message, ErrorKind.HOST_KEY_MISMATCH)
        except Exception as e:
            if _is_auth_failure(e):
                logger.warning(
                    "SSH authentication failed",
                    extra={"workspace_id": workspace.id, "key_path": str(key_path), "error": str(e)},
                )
                return CommandResult(False, f"SSH authentication failed: {e}", ErrorKind.CONFIG)
            if _is_transient_exception(e):
                detail = str(e) or type(e).__name__
                logger.debug(
                    "SSH command gave up after retries",
                    extra={"workspace_id": workspace.id, "attempts": self._attempts, "error": detail},
                )
                return CommandResult(False, f"SSH transient error: {detail}", ErrorKind.TRANSIENT)
            logger.warning(
                "SSH command failed unexpectedly",
                extra={"workspace_id": workspace.id, "error": str(e), "error_type": type(e).__name__},
            )
            return CommandResult(False, str(e) or type(e).__name__, ErrorKind.UNEXPECTED)

        if output.exit_status == 0:
            return CommandResult(True, output.stdout.strip())

        if output.stderr.strip():
            return CommandResult(False, output.stderr.strip(), ErrorKind.COMMAND_FAILED)
        if output.stdout.strip():
            return CommandResult(False, output.stdout.strip(), ErrorKind.COMMAND_FAILED)
        return CommandResult(False, f"SSH command failed with exit {output.exit_status}", ErrorKind.COMMAND_FAILED)
