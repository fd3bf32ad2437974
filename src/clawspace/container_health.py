"""Container stack health from ``docker ps`` output.

The guest is only observed through command output, so this module is pure:
it turns ``name|status`` rows into a verdict.  Compose prefixes and suffixes
container names (``rauskuclaw-api-1``, ``proj_rauskuclaw-worker_1``), so each
row is mapped back to the first expected logical name it matches.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from clawspace import constants
from clawspace.models import ErrorKind, ProbeResult

if TYPE_CHECKING:
    from collections.abc import Sequence

DOCKER_UNAVAILABLE_MARKER = "docker-unavailable"

DOCKER_PS_COMMAND = (
    "if docker version --format '{{.Server.Version}}' >/dev/null 2>&1; then "
    "DOCKER='docker'; "
    "elif sudo -n docker version --format '{{.Server.Version}}' >/dev/null 2>&1; then "
    "DOCKER='sudo -n docker'; "
    f"else echo '{DOCKER_UNAVAILABLE_MARKER}'; exit 19; fi; "
    "$DOCKER ps --format '{{.Names}}|{{.Status}}'"
)


def resolve_expected_name(actual: str, expected: Sequence[str] = constants.EXPECTED_CONTAINERS) -> str | None:
    """Map a real container name to an expected logical name, or None.

    Order of ``expected`` matters: ``rauskuclaw-ui-v2`` must be tried before
    ``rauskuclaw-ui`` since the latter is a substring of the former.
    """
    name = actual.strip().lower()
    if not name:
        return None
    for candidate in expected:
        wanted = candidate.lower()
        if (
            name == wanted
            or name.startswith((wanted + "-", wanted + "_"))
            or (wanted + "-") in name
            or (wanted + "_") in name
            or wanted in name
        ):
            return candidate
    return None


def parse_container_table(
    output: str,
    expected: Sequence[str] = constants.EXPECTED_CONTAINERS,
) -> dict[str, str]:
    """Statuses keyed by expected name.  The first row for a name wins."""
    statuses: dict[str, str] = {}
    for raw_line in output.splitlines():
        name, sep, status = raw_line.partition("|")
        name, status = name.strip(), status.strip()
        if not sep or not name or not status:
            continue
        expected_name = resolve_expected_name(name, expected)
        if expected_name is not None and expected_name not in statuses:
            statuses[expected_name] = status
    return statuses


def evaluate_container_table(
    output: str,
    expected: Sequence[str] = constants.EXPECTED_CONTAINERS,
) -> ProbeResult:
    """Every expected container must be present, Up, and not unhealthy or starting."""
    statuses = parse_container_table(output, expected)

    missing: list[str] = []
    not_running: list[str] = []
    unhealthy: list[str] = []
    starting: list[str] = []
    running = 0

    for container in expected:
        status = statuses.get(container)
        if status is None:
            missing.append(container)
            continue
        lowered = status.lower()
        if not lowered.startswith("up"):
            not_running.append(f"{container} ({status})")
            continue
        running += 1
        if "unhealthy" in lowered:
            unhealthy.append(container)
        elif "health: starting" in lowered or "(starting)" in lowered:
            starting.append(container)

    if missing:
        return ProbeResult.fail(f"Docker missing containers: {', '.join(missing)}.")
    if not_running:
        return ProbeResult.fail(f"Docker containers not running: {', '.join(not_running)}.")
    if unhealthy:
        return ProbeResult.fail(f"Docker unhealthy containers: {', '.join(unhealthy)}.")
    if starting:
        return ProbeResult.fail(f"Docker health checks still starting: {', '.join(starting)}.")
    return ProbeResult.ok(f"Docker stack is running and healthy ({running}/{len(expected)} expected containers).")


def docker_failure(message: str, kind: ErrorKind) -> ProbeResult:
    """Translate a failed ``DOCKER_PS_COMMAND`` run into a probe result."""
    if DOCKER_UNAVAILABLE_MARKER in message.lower():
        return ProbeResult.fail("Docker daemon is not ready yet.", kind)
    return ProbeResult.fail(f"Docker stack check failed: {message}", kind)
