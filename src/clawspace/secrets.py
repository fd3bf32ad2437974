"""Secret sources for the optional secret-manager stage.

A SecretSource returns a flat key/value map for the requested keys or raises
SecretSourceError.  The orchestrator never talks to a secret manager
directly; it asks ``resolve_secrets`` for a classified result.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from clawspace._logging import get_logger
from clawspace.exceptions import SecretSourceError

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = get_logger(__name__)


class SecretSource(Protocol):
    """Anything that can fetch named secrets.

    Attributes:
        name: Display name used in result messages
    """

    name: str

    async def get_secrets(self, keys: Sequence[str]) -> dict[str, str]: ...


class SecretStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class SecretResolution:
    status: SecretStatus
    message: str
    secrets: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status is SecretStatus.SUCCESS


class MappingSecretSource:
    """Secrets held in memory.  Missing keys are simply absent from the result."""

    def __init__(self, values: Mapping[str, str], name: str = "static") -> None:
        self.name = name
        self._values = dict(values)

    async def get_secrets(self, keys: Sequence[str]) -> dict[str, str]:
        return {key: self._values[key] for key in keys if self._values.get(key)}


class EnvironmentSecretSource:
    """Secrets read from host environment variables, ``<prefix><KEY>``."""

    def __init__(self, prefix: str = "CLAWSPACE_SECRET_", name: str = "environment") -> None:
        self.name = name
        self.prefix = prefix

    async def get_secrets(self, keys: Sequence[str]) -> dict[str, str]:
        found: dict[str, str] = {}
        for key in keys:
            value = os.environ.get(f"{self.prefix}{key}", "").strip()
            if value:
                found[key] = value
        return found


async def resolve_secrets(source: SecretSource, keys: Sequence[str], timeout: float) -> SecretResolution:
    """Fetch ``keys`` from ``source`` and classify the outcome.

    Never raises for source failures; cancellation propagates.
    """
    requested = list(keys)
    try:
        async with asyncio.timeout(timeout):
            secrets = await source.get_secrets(requested)
    except (SecretSourceError, TimeoutError, OSError) as e:
        detail = str(e) or type(e).__name__
        logger.warning(
            "Secret source fetch failed",
            extra={"source": source.name, "error": detail, "error_type": type(e).__name__},
        )
        return SecretResolution(SecretStatus.FAILED, f"{source.name} fetch failed (timeout/auth): {detail}")

    if not secrets:
        return SecretResolution(SecretStatus.EMPTY, f"{source.name} returned no secrets.")
    if len(secrets) < len(requested):
        return SecretResolution(
            SecretStatus.PARTIAL,
            f"{source.name} returned partial secret set ({len(secrets)}/{len(requested)}).",
            secrets,
        )
    return SecretResolution(SecretStatus.SUCCESS, f"Secrets loaded from {source.name}.", secrets)
