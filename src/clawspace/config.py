"""Startup timing configuration for clawspace.

StartupConfig holds every deadline, grace period and retry interval used by
the readiness probes, the orchestrator and the warm-up loop.  Defaults match
a cold boot of the guest image on a developer laptop; tests shrink them.

Example:
    ```python
    from clawspace import StartupConfig, WorkspaceStartupOrchestrator

    config = StartupConfig(ssh_tcp_timeout_seconds=300)
    orchestrator = WorkspaceStartupOrchestrator(..., config=config)
    ```
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from clawspace import constants


class StartupConfig(BaseModel):
    """Per-run timeouts and intervals.

    Attributes:
        serial_wait_seconds: Best-effort wait for the serial console port.
        ssh_tcp_timeout_seconds: SSH port reachability; guest boot dominates.
        ssh_stable_grace_seconds: Pause after the SSH port opens, since sshd
            may listen before it accepts sessions.
        ssh_stable_timeout_seconds: Deadline for a stable command channel.
        repository_timeout_seconds: Deadline for the guest repository checkout.
        env_timeout_seconds: Deadline for a complete runtime .env.
        docker_timeout_seconds: Deadline for the container stack.
        cloud_init_timeout_seconds: Deadline for cloud-init to report done.
        api_timeout_seconds: API port reachability.
        web_timeout_seconds: Primary web port reachability.
        web_fallback_timeout_seconds: UI-v2 reachability after the web port failed.
        secret_manager_timeout_seconds: Secret source resolution and proxy port.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    # Process
    early_exit_check_seconds: float = Field(default=constants.EARLY_EXIT_CHECK_SECONDS, ge=0)
    stop_wait_seconds: float = Field(default=constants.STOP_WAIT_SECONDS, ge=0)

    # Network
    serial_wait_seconds: float = Field(default=30.0, ge=0)
    ssh_tcp_timeout_seconds: float = Field(default=120.0, gt=0)
    tcp_retry_interval_seconds: float = Field(default=constants.TCP_RETRY_INTERVAL_SECONDS, gt=0)

    # SSH stabilization
    ssh_stable_grace_seconds: float = Field(default=2.5, ge=0)
    ssh_stable_timeout_seconds: float = Field(default=35.0, gt=0)
    ssh_stable_backoff_base_seconds: float = Field(default=1.2, ge=0)
    ssh_stable_backoff_step_seconds: float = Field(default=0.4, ge=0)
    ssh_stable_backoff_max_seconds: float = Field(default=5.0, ge=0)

    # Command channel
    ssh_command_attempts: int = Field(default=constants.SSH_COMMAND_ATTEMPTS, ge=1, le=10)
    ssh_retry_delay_seconds: float = Field(
        default=constants.SSH_RETRY_DELAY_SECONDS,
        ge=0,
        description="Delay before retry n is n times this value",
    )

    # Repository
    repository_timeout_seconds: float = Field(default=180.0, gt=0)
    repository_backoff_base_seconds: float = Field(default=1.2, ge=0)
    repository_backoff_step_seconds: float = Field(default=0.35, ge=0)
    repository_backoff_max_seconds: float = Field(default=5.0, ge=0)

    # Runtime environment
    env_timeout_seconds: float = Field(default=150.0, gt=0)
    env_retry_seconds: float = Field(default=3.0, ge=0)
    env_heal_settle_seconds: float = Field(default=0.4, ge=0)

    # Guest services
    docker_timeout_seconds: float = Field(default=180.0, gt=0)
    docker_retry_seconds: float = Field(default=3.0, ge=0)
    cloud_init_timeout_seconds: float = Field(default=180.0, gt=0)
    cloud_init_retry_seconds: float = Field(default=3.0, ge=0)
    secret_manager_timeout_seconds: float = Field(default=20.0, gt=0)

    # Web endpoints
    api_timeout_seconds: float = Field(default=40.0, gt=0)
    web_timeout_seconds: float = Field(default=75.0, gt=0)
    web_fallback_timeout_seconds: float = Field(default=10.0, gt=0)

    # Warm-up
    warmup_max_attempts: int = Field(default=18, ge=1)
    warmup_interval_seconds: float = Field(default=12.0, ge=0)
