"""Readiness probes for a booting workspace guest.

Every probe returns a ProbeResult with an actionable message.  Expected
failures (timeouts, missing files, unhealthy containers) are values, never
exceptions; only cancellation propagates.  Deadlines are measured on the
event loop clock and all timings come from StartupConfig.

Probes that poll accept an optional ``log`` callback for progress lines.
Those lines are throttled (first attempt, then every few attempts) so a
slow guest does not flood the caller.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from clawspace import constants
from clawspace._logging import get_logger
from clawspace.container_health import DOCKER_PS_COMMAND, docker_failure, evaluate_container_table
from clawspace.models import CommandResult, ErrorKind, ProbeResult
from clawspace.net_wait import wait_tcp
from clawspace.secrets import resolve_secrets

if TYPE_CHECKING:
    from collections.abc import Sequence

    from clawspace.command_channel import CommandChannel
    from clawspace.config import StartupConfig
    from clawspace.models import Workspace
    from clawspace.secrets import SecretSource

logger = get_logger(__name__)

LogFn = Callable[[str], None]

CLOUD_INIT_STATUS_COMMAND = "cloud-init status --long 2>/dev/null || cloud-init status 2>/dev/null || true"

CLOUD_INIT_TAIL_COMMAND = (
    "tail -n 80 /var/log/cloud-init-output.log 2>/dev/null "
    "|| tail -n 80 /var/log/cloud-init.log 2>/dev/null "
    "|| journalctl -u cloud-final --no-pager -n 80 2>/dev/null "
    "|| true"
)

STORAGE_PROBE_COMMAND = (
    "set -e; ROOT_OPTS=$(findmnt -no OPTIONS / 2>/dev/null || true); "
    "if [ -z \"$ROOT_OPTS\" ]; then ROOT_OPTS=$(awk '$2==\"/\"{print $4; exit}' /proc/mounts 2>/dev/null || true); fi; "
    "ROOT_MODE=rw; if printf '%s' \"$ROOT_OPTS\" | grep -Eq '(^|,)ro(,|$)'; then ROOT_MODE=ro; fi; "
    "PROBE_FILE=\"/var/tmp/rauskuclaw-write-probe.$$\"; PROBE_ERR=\"\"; PROBE_STATE=ok; "
    "if ! sh -c \"echo probe > '$PROBE_FILE'\" 2>/tmp/rauskuclaw-write-probe.err; then "
    "PROBE_STATE=fail; PROBE_ERR=$(tr '\\n' ' ' </tmp/rauskuclaw-write-probe.err 2>/dev/null || true); "
    "else rm -f \"$PROBE_FILE\"; fi; "
    "DF_K=$(df -Pk / 2>/dev/null | tail -n 1 || true); DF_I=$(df -Pi / 2>/dev/null | tail -n 1 || true); "
    "echo \"root_mode=$ROOT_MODE opts=$ROOT_OPTS\"; echo \"write_probe=$PROBE_STATE err=$PROBE_ERR\"; "
    "echo \"df_k=$DF_K\"; echo \"df_i=$DF_I\""
)

CONNECTION_TEST_COMMAND = "echo connection-ok"

# Probe failures that no amount of waiting will fix.
_FATAL_KINDS = frozenset({ErrorKind.HOST_KEY_MISMATCH, ErrorKind.CONFIG})


def shell_quote_path(value: str) -> str:
    """Escape for use inside single quotes in a POSIX shell."""
    return value.replace("'", "'\\''")


def _one_line(text: str) -> str:
    return text.replace("\r", " ").replace("\n", " ").strip()


def _should_report(attempt: int, every: int) -> bool:
    return attempt == 1 or attempt % every == 0


def _report(log: LogFn | None, message: str) -> None:
    if log is not None:
        log(message)


def runtime_env_probe_command(repo_dir: str) -> str:
    env_path = f"{shell_quote_path(repo_dir)}/.env"
    placeholder = constants.ENV_PLACEHOLDER_VALUE
    return (
        f"if [ ! -f '{env_path}' ]; then echo status=missing-file; exit 9; fi; "
        f"API_KEY_LINE=$(grep -E '^API_KEY=' '{env_path}' 2>/dev/null | tail -n 1 || true); "
        f"API_TOKEN_LINE=$(grep -E '^API_TOKEN=' '{env_path}' 2>/dev/null | tail -n 1 || true); "
        "if [ -z \"$API_KEY_LINE\" ] || [ -z \"$API_TOKEN_LINE\" ]; then echo status=missing-secret; exit 9; fi; "
        "API_KEY_VALUE=${API_KEY_LINE#API_KEY=}; API_TOKEN_VALUE=${API_TOKEN_LINE#API_TOKEN=}; "
        "API_KEY_VALUE=$(printf '%s' \"$API_KEY_VALUE\" | tr -d '\\r' | sed -e 's/^\"//' -e 's/\"$//' | xargs); "
        "API_TOKEN_VALUE=$(printf '%s' \"$API_TOKEN_VALUE\" | tr -d '\\r' | sed -e 's/^\"//' -e 's/\"$//' | xargs); "
        "if [ -z \"$API_KEY_VALUE\" ] || [ -z \"$API_TOKEN_VALUE\" ] "
        f"|| [ \"$API_KEY_VALUE\" = \"{placeholder}\" ] || [ \"$API_TOKEN_VALUE\" = \"{placeholder}\" ]; "
        "then echo status=placeholder-secret; exit 9; fi; "
        "echo env-ok"
    )


def runtime_env_heal_command(repo_dir: str) -> str:
    """Replace placeholder API secrets in the guest .env.

    API_KEY gets a fresh random hex value; API_TOKEN, when invalid, copies
    API_KEY.  Valid values are left alone.  Prints ``env-healed``.
    """
    env_path = f"{shell_quote_path(repo_dir)}/.env"
    placeholders = "|".join(f'"{value}"' for value in constants.ENV_HEAL_PLACEHOLDERS)
    return (
        f"ENV_FILE='{env_path}'; "
        "if [ ! -f \"$ENV_FILE\" ]; then echo env-file-missing; exit 9; fi; "
        "random_hex_32() { if command -v openssl >/dev/null 2>&1; then openssl rand -hex 32; return; fi; "
        "if command -v od >/dev/null 2>&1; then head -c 32 /dev/urandom | od -An -tx1 | tr -d ' \\n'; return; fi; "
        "date +%s%N | sha256sum | awk '{print $1}'; }; "
        "set_env_var() { local key=\"$1\"; local value=\"$2\"; "
        "if grep -Eq \"^${key}=\" \"$ENV_FILE\"; then sed -i \"s|^${key}=.*|${key}=${value}|\" \"$ENV_FILE\"; "
        "else echo \"${key}=${value}\" >> \"$ENV_FILE\"; fi; }; "
        "normalize_value() { printf '%s' \"$1\" | tr -d '\\r' "
        "| sed -e 's/^[[:space:]]*//' -e 's/[[:space:]]*$//' -e 's/^\"//' -e 's/\"$//'; }; "
        f"is_placeholder() {{ case \"$1\" in \"\"|{placeholders}) return 0 ;; *) return 1 ;; esac; }}; "
        "API_KEY_RAW=$(grep -E '^API_KEY=' \"$ENV_FILE\" 2>/dev/null | tail -n 1 | cut -d= -f2- || true); "
        "API_KEY=$(normalize_value \"$API_KEY_RAW\"); "
        "if is_placeholder \"$API_KEY\"; then API_KEY=$(random_hex_32); "
        "[ -z \"$API_KEY\" ] && echo generation-failed && exit 9; set_env_var API_KEY \"$API_KEY\"; fi; "
        "API_TOKEN_RAW=$(grep -E '^API_TOKEN=' \"$ENV_FILE\" 2>/dev/null | tail -n 1 | cut -d= -f2- || true); "
        "API_TOKEN=$(normalize_value \"$API_TOKEN_RAW\"); "
        "if is_placeholder \"$API_TOKEN\"; then set_env_var API_TOKEN \"$API_KEY\"; fi; "
        "API_KEY_RAW=$(grep -E '^API_KEY=' \"$ENV_FILE\" 2>/dev/null | tail -n 1 | cut -d= -f2- || true); "
        "API_TOKEN_RAW=$(grep -E '^API_TOKEN=' \"$ENV_FILE\" 2>/dev/null | tail -n 1 | cut -d= -f2- || true); "
        "API_KEY=$(normalize_value \"$API_KEY_RAW\"); API_TOKEN=$(normalize_value \"$API_TOKEN_RAW\"); "
        "if is_placeholder \"$API_KEY\" || is_placeholder \"$API_TOKEN\"; then echo not-ready; exit 9; fi; "
        "echo env-healed"
    )


def runtime_env_hint(probe_message: str | None) -> str:
    """Operator hint for a failed runtime .env probe."""
    if not probe_message or not probe_message.strip():
        return "Runtime .env not ready yet."
    lowered = probe_message.lower()
    if "status=missing-file" in lowered:
        return "Runtime .env missing. Action: rerun wizard provisioning or verify repo path and cloud-init completion."
    if "status=missing-secret" in lowered:
        return (
            "Runtime .env missing API_KEY/API_TOKEN. "
            "Action: verify cloud-init env preflight completed and .env exists under repo root."
        )
    if "status=placeholder-secret" in lowered:
        return (
            "Runtime .env has placeholder API secrets. "
            "Action: auto-heal in progress; if it still fails, check VM disk write access."
        )
    if "permission denied" in lowered:
        return (
            "Permission denied while reading runtime .env. "
            "Action: verify VM user permissions for repository directory."
        )
    return probe_message.strip()


@dataclass(frozen=True, slots=True)
class StorageDiagnosis:
    has_issue: bool
    message: str


def parse_storage_probe(output: str) -> StorageDiagnosis:
    """Classify the output of STORAGE_PROBE_COMMAND."""
    text = output.replace("\r", " ").strip()
    if not text:
        return StorageDiagnosis(False, "storage probe returned no output")

    lines = [line.strip() for line in text.split("\n") if line.strip()]

    def first(prefix: str) -> str:
        return next((line for line in lines if line.lower().startswith(prefix)), "")

    root_line = first("root_mode=")
    write_line = first("write_probe=")
    df_k_line = first("df_k=")
    df_i_line = first("df_i=")

    root_read_only = "root_mode=ro" in root_line.lower()
    write_failed = "write_probe=fail" in write_line.lower()
    if not root_read_only and not write_failed:
        return StorageDiagnosis(False, "guest filesystem writable")

    reason = "filesystem write failure"
    if "no space left on device" in write_line.lower():
        reason = "No space left on device"
    elif "read-only file system" in write_line.lower() or root_read_only:
        reason = "Read-only file system"

    parts = [reason, *(line for line in (root_line, write_line, df_k_line, df_i_line) if line)]
    return StorageDiagnosis(True, " | ".join(parts))


class ReadinessProbes:
    """Readiness checks for one host, built on TCP connects and a CommandChannel.

    Attributes:
        host: Address the guest ports are forwarded to
    """

    def __init__(
        self,
        channel: CommandChannel,
        config: StartupConfig,
        *,
        host: str = constants.LOOPBACK_HOST,
    ) -> None:
        self._channel = channel
        self._config = config
        self.host = host

    # ------------------------------------------------------------------
    # TCP endpoints
    # ------------------------------------------------------------------

    async def wait_port(self, port: int, timeout: float) -> bool:
        """True once ``host:port`` accepts a TCP connection, False after ``timeout``."""
        try:
            await wait_tcp(self.host, port, timeout, retry_interval=self._config.tcp_retry_interval_seconds)
        except TimeoutError:
            return False
        return True

    async def wait_api(self, workspace: Workspace) -> ProbeResult:
        port = workspace.ports.api if workspace.ports else constants.BASE_API_PORT
        if await self.wait_port(port, self._config.api_timeout_seconds):
            return ProbeResult.ok(f"API is reachable on {self.host}:{port}.")
        return ProbeResult.fail(f"API port did not become reachable ({self.host}:{port}).", ErrorKind.TIMEOUT)

    async def wait_web_ui(self, workspace: Workspace) -> ProbeResult:
        """Primary web port first; UI-v2 is accepted as a fallback signal."""
        web_port = workspace.ports.web if workspace.ports else constants.BASE_WEB_PORT
        ui_v2_port = workspace.ports.ui_v2 if workspace.ports else constants.BASE_UI_V2_PORT

        if await self.wait_port(web_port, self._config.web_timeout_seconds):
            return ProbeResult.ok(f"WebUI is reachable on {self.host}:{web_port}.")
        if await self.wait_port(ui_v2_port, self._config.web_fallback_timeout_seconds):
            return ProbeResult.ok(f"WebUI-v2 is reachable on {self.host}:{ui_v2_port}.")
        return ProbeResult.fail(
            f"WebUI ports did not become reachable ({web_port}, {ui_v2_port}).",
            ErrorKind.TIMEOUT,
        )

    # ------------------------------------------------------------------
    # SSH command channel
    # ------------------------------------------------------------------

    async def wait_ssh_stable(self, workspace: Workspace) -> ProbeResult:
        """Wait until ``echo ssh-ready`` succeeds.

        sshd accepts TCP before it accepts sessions, so the first attempt
        runs only after a grace period.  The failure kind is that of the
        last command result, or TIMEOUT when no attempt ran.
        """
        cfg = self._config
        loop = asyncio.get_running_loop()
        await asyncio.sleep(cfg.ssh_stable_grace_seconds)
        deadline = loop.time() + cfg.ssh_stable_timeout_seconds

        last: CommandResult | None = None
        attempt = 0
        while loop.time() < deadline:
            attempt += 1
            result = await self._channel.run_command(workspace, "echo ssh-ready")
            if result.ok:
                return ProbeResult.ok("SSH command probe succeeded.")
            last = result
            if result.kind in _FATAL_KINDS:
                break
            backoff = min(
                cfg.ssh_stable_backoff_max_seconds,
                cfg.ssh_stable_backoff_base_seconds + cfg.ssh_stable_backoff_step_seconds * attempt,
            )
            await asyncio.sleep(max(0.0, min(backoff, deadline - loop.time())))

        detail = last.output if last is not None else "timeout"
        kind = last.kind if last is not None else ErrorKind.TIMEOUT
        return ProbeResult.fail(f"SSH became reachable but command channel did not stabilize: {detail}", kind)

    async def wait_repository(self, workspace: Workspace) -> ProbeResult:
        """Wait for the repository checkout; kind TIMEOUT when the window ran out."""
        cfg = self._config
        loop = asyncio.get_running_loop()
        repo_dir = shell_quote_path(workspace.repo_target_dir)
        command = f"if [ -d '{repo_dir}/.git' ] || [ -d '{repo_dir}' ]; then echo repo-ok; else exit 7; fi"
        deadline = loop.time() + cfg.repository_timeout_seconds

        last_message = "Repository path not ready yet."
        last_cloud_init = "unknown"
        attempt = 0
        while loop.time() < deadline:
            attempt += 1
            result = await self._channel.run_command(workspace, command)
            if result.ok:
                return ProbeResult.ok("Repository looks available.")
            if result.kind in _FATAL_KINDS:
                return ProbeResult.fail(result.output, result.kind)
            last_message = result.output

            if attempt % 3 == 0:
                cloud_init = await self._channel.run_command(workspace, CLOUD_INIT_STATUS_COMMAND)
                if cloud_init.ok and cloud_init.output.strip():
                    last_cloud_init = _one_line(cloud_init.output)

            backoff = min(
                cfg.repository_backoff_max_seconds,
                cfg.repository_backoff_base_seconds + cfg.repository_backoff_step_seconds * attempt,
            )
            await asyncio.sleep(max(0.0, min(backoff, deadline - loop.time())))

        return ProbeResult.fail(
            f"Repository not ready after wait window: {last_message} | cloud-init: {last_cloud_init}",
            ErrorKind.TIMEOUT,
        )

    async def cloud_init_tail(self, workspace: Workspace) -> str | None:
        """Last lines of the cloud-init log, for operators.  None if unavailable."""
        result = await self._channel.run_command(workspace, CLOUD_INIT_TAIL_COMMAND)
        if result.ok and result.output.strip():
            return result.output
        return None

    async def detect_guest_storage_issue(self, workspace: Workspace) -> StorageDiagnosis:
        result = await self._channel.run_command(workspace, STORAGE_PROBE_COMMAND)
        if not result.ok:
            return StorageDiagnosis(False, result.output)
        return parse_storage_probe(result.output)

    async def wait_runtime_env(self, workspace: Workspace, log: LogFn | None = None) -> ProbeResult:
        """Wait for a runtime .env with real API secrets, healing placeholders.

        A guest filesystem problem fails the wait immediately since the
        heal script cannot write either.
        """
        cfg = self._config
        loop = asyncio.get_running_loop()
        probe_command = runtime_env_probe_command(workspace.repo_target_dir)
        heal_command = runtime_env_heal_command(workspace.repo_target_dir)
        deadline = loop.time() + cfg.env_timeout_seconds

        last_message = "Runtime .env not ready yet."
        attempt = 0
        while loop.time() < deadline:
            attempt += 1
            probe = await self._channel.run_command(workspace, probe_command)
            if probe.ok:
                return ProbeResult.ok("Runtime .env is ready.")
            if probe.kind in _FATAL_KINDS:
                return ProbeResult.fail(probe.output, probe.kind)

            if _should_report(attempt, 4):
                storage = await self.detect_guest_storage_issue(workspace)
                if storage.has_issue:
                    return ProbeResult.fail(f"Guest filesystem issue detected: {storage.message}")

            lowered = probe.output.lower()
            if "status=missing-secret" in lowered or "status=placeholder-secret" in lowered:
                healed = await self._channel.run_command(workspace, heal_command)
                if healed.ok:
                    _report(log, "Env warmup: auto-healed API_KEY/API_TOKEN in runtime .env.")
                    await asyncio.sleep(cfg.env_heal_settle_seconds)
                    continue
                if _should_report(attempt, 4):
                    _report(log, f"Env warmup: API token auto-heal failed: {healed.output}")

            last_message = runtime_env_hint(probe.output)
            if _should_report(attempt, 4):
                _report(log, f"Env warmup: {last_message}")
            await asyncio.sleep(max(0.0, min(cfg.env_retry_seconds, deadline - loop.time())))

        return ProbeResult.fail(
            f"Runtime .env missing or incomplete after wait window: {last_message}",
            ErrorKind.TIMEOUT,
        )

    async def wait_cloud_init(self, workspace: Workspace, log: LogFn | None = None) -> ProbeResult:
        """Poll cloud-init until it reports done.

        Output other than running / not run is taken as completed.  Losing
        the SSH session is tolerated; any other command failure ends the
        wait.
        """
        cfg = self._config
        loop = asyncio.get_running_loop()
        timeout = cfg.cloud_init_timeout_seconds
        deadline = loop.time() + timeout

        last_status = "unknown"
        last_transient: str | None = None
        attempt = 0
        while loop.time() < deadline:
            attempt += 1
            result = await self._channel.run_command(workspace, CLOUD_INIT_STATUS_COMMAND)
            if not result.ok:
                if result.kind is ErrorKind.TRANSIENT:
                    last_transient = result.output
                    if _should_report(attempt, 3):
                        _report(log, "cloud-init wait transient SSH loss, retrying...")
                    await asyncio.sleep(max(0.0, min(cfg.cloud_init_retry_seconds, deadline - loop.time())))
                    continue
                return ProbeResult.fail(f"cloud-init status probe failed: {result.output}", result.kind)

            text = result.output.strip()
            if text:
                last_status = _one_line(text)
            lowered = text.lower()
            if "status: done" in lowered:
                return ProbeResult.ok("cloud-init final stage completed.")
            if "running" in lowered or "not run" in lowered:
                if _should_report(attempt, 4):
                    _report(log, f"cloud-init status: {last_status}")
                await asyncio.sleep(max(0.0, min(cfg.cloud_init_retry_seconds, deadline - loop.time())))
                continue
            return ProbeResult.ok("cloud-init status probe completed.")

        timeout_message = f"cloud-init wait timed out after {int(timeout)}s"
        _report(log, timeout_message)
        if last_transient:
            return ProbeResult.fail(f"{timeout_message}. Last transient SSH error: {last_transient}", ErrorKind.TIMEOUT)
        return ProbeResult.fail(f"{timeout_message}. Last status: {last_status}", ErrorKind.TIMEOUT)

    # ------------------------------------------------------------------
    # Container stack
    # ------------------------------------------------------------------

    async def check_docker_stack(self, workspace: Workspace) -> ProbeResult:
        result = await self._channel.run_command(workspace, DOCKER_PS_COMMAND)
        if not result.ok:
            return docker_failure(result.output, result.kind)
        return evaluate_container_table(result.output)

    async def wait_docker_stack(self, workspace: Workspace, log: LogFn | None = None) -> ProbeResult:
        cfg = self._config
        loop = asyncio.get_running_loop()
        deadline = loop.time() + cfg.docker_timeout_seconds

        last_message = "Docker stack is not ready yet."
        attempt = 0
        while loop.time() < deadline:
            attempt += 1
            check = await self.check_docker_stack(workspace)
            if check.success:
                return check
            if check.kind in _FATAL_KINDS:
                return check
            last_message = check.message
            if _should_report(attempt, 3):
                _report(log, f"Docker warmup: {last_message}")
            await asyncio.sleep(max(0.0, min(cfg.docker_retry_seconds, deadline - loop.time())))

        return ProbeResult.fail(f"Docker stack did not become healthy in time: {last_message}", ErrorKind.TIMEOUT)

    # ------------------------------------------------------------------
    # Secret manager and final connection test
    # ------------------------------------------------------------------

    async def wait_secret_manager(
        self,
        workspace: Workspace,
        source: SecretSource,
        keys: Sequence[str] = constants.ENV_REQUIRED_KEYS,
    ) -> ProbeResult:
        """Required keys must resolve, then the proxy port must answer."""
        timeout = self._config.secret_manager_timeout_seconds
        resolution = await resolve_secrets(source, keys, timeout)
        if not resolution.success:
            return ProbeResult.fail(resolution.message, ErrorKind.CONFIG)

        port = workspace.ports.holvi_proxy if workspace.ports else constants.BASE_API_PORT + constants.HOLVI_PROXY_OFFSET
        if not await self.wait_port(port, timeout):
            return ProbeResult.fail(
                f"{resolution.message} Secret proxy did not become reachable ({self.host}:{port}).",
                ErrorKind.TIMEOUT,
            )
        return ProbeResult.ok(f"{resolution.message} Secret proxy is reachable on {self.host}:{port}.")

    async def check_connection(self, workspace: Workspace) -> ProbeResult:
        result = await self._channel.run_command(workspace, CONNECTION_TEST_COMMAND)
        if result.ok and "connection-ok" in result.output:
            return ProbeResult.ok("Connection test passed.")
        logger.debug("Connection test failed", extra={"workspace_id": workspace.id, "output": result.output})
        detail = _one_line(result.output) or "no output"
        return ProbeResult.fail(
            f"Connection test failed: {detail}",
            result.kind if not result.ok else ErrorKind.COMMAND_FAILED,
        )
