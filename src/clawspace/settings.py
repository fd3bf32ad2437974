"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from clawspace import constants
from clawspace.platform_utils import default_accelerator, get_data_dir


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with CLAWSPACE_ prefix.
    Example: CLAWSPACE_QEMU_BIN=/opt/qemu/bin/qemu-system-x86_64
    """

    model_config = SettingsConfigDict(
        env_prefix="CLAWSPACE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # QEMU
    qemu_bin: Path = Path("qemu-system-x86_64")
    accelerator: str = Field(default_factory=default_accelerator)

    # Storage
    data_dir: Path = Field(default_factory=get_data_dir)

    # Port slots
    port_range_start: int = Field(default=constants.DEFAULT_PORT_RANGE_START, ge=1024, le=65535)
    port_range_end: int = Field(default=constants.DEFAULT_PORT_RANGE_END, ge=1024, le=65535)

    # Warm-up
    warmup_max_attempts: int = Field(default=18, ge=1)
    warmup_interval_seconds: float = Field(default=12.0, gt=0)

    @property
    def trust_store_path(self) -> Path:
        return self.data_dir / "known-hosts.json"

    @property
    def workspace_store_path(self) -> Path:
        return self.data_dir / "workspaces.json"
