"""Constants for clawspace port layout, guest paths and startup timing."""

from typing import Final

# ============================================================================
# Host Port Layout
# ============================================================================

LOOPBACK_HOST: Final[str] = "127.0.0.1"
"""All forwarded and probed ports bind to loopback only."""

BASE_SSH_PORT: Final[int] = 2222
BASE_WEB_PORT: Final[int] = 8080
BASE_API_PORT: Final[int] = 3011
BASE_UI_V1_PORT: Final[int] = 3012
BASE_UI_V2_PORT: Final[int] = 3013
BASE_QMP_PORT: Final[int] = 4444
BASE_SERIAL_PORT: Final[int] = 5555

PORT_SLOT_STEP: Final[int] = 100
"""Slot n shifts every base port by n * PORT_SLOT_STEP."""

DEFAULT_PORT_RANGE_START: Final[int] = 2222
DEFAULT_PORT_RANGE_END: Final[int] = 5000
"""Inclusive bounds for the SSH port of an allocated slot."""

HOLVI_PROXY_OFFSET: Final[int] = 5088
"""Secret-manager proxy host port = api + offset."""

INFISICAL_UI_OFFSET: Final[int] = 5077
"""Secret-manager UI host port = api + offset."""

MIN_REMAP_PORT: Final[int] = 1024
MAX_PORT: Final[int] = 65535

# ============================================================================
# Guest Ports (hostfwd targets)
# ============================================================================

GUEST_SSH_PORT: Final[int] = 22
GUEST_WEB_PORT: Final[int] = 80
GUEST_API_PORT: Final[int] = 3001
GUEST_UI_V1_PORT: Final[int] = 3002
GUEST_UI_V2_PORT: Final[int] = 3003
GUEST_HOLVI_PROXY_PORT: Final[int] = 8099
GUEST_INFISICAL_UI_PORT: Final[int] = 8088

# ============================================================================
# Guest Layout
# ============================================================================

DEFAULT_USERNAME: Final[str] = "rausku"
DEFAULT_REPO_DIR: Final[str] = "/opt/rauskuclaw"

EXPECTED_CONTAINERS: Final[tuple[str, ...]] = (
    "rauskuclaw-api",
    "rauskuclaw-worker",
    "rauskuclaw-ollama",
    "rauskuclaw-ui-v2",
    "rauskuclaw-ui",
)
"""Logical container names the guest stack must run."""

ENV_REQUIRED_KEYS: Final[tuple[str, ...]] = ("API_KEY", "API_TOKEN")

ENV_PLACEHOLDER_VALUE: Final[str] = "change-me-please"
"""Value shipped in the template .env; never a usable secret."""

ENV_HEAL_PLACEHOLDERS: Final[tuple[str, ...]] = (
    "change-me-please",
    "your_api_key_here",
    "replace-me",
    "placeholder",
)
"""Values the self-heal script treats as unset."""

# ============================================================================
# Command Channel
# ============================================================================

SSH_COMMAND_ATTEMPTS: Final[int] = 3
SSH_RETRY_DELAY_SECONDS: Final[float] = 0.4
"""Delay before retry n is n * SSH_RETRY_DELAY_SECONDS."""

SSH_CONNECT_TIMEOUT_SECONDS: Final[float] = 10.0
SSH_COMMAND_TIMEOUT_SECONDS: Final[float] = 60.0

TRANSIENT_SSH_PHRASES: Final[tuple[str, ...]] = (
    "socket",
    "connection",
    "aborted by",
    "forcibly closed",
    "timed out",
    "reset by peer",
    # sshd is listening but not accepting sessions yet during guest boot
    "not allowed at this time",
    "does not contain an ssh identification",
)

# ============================================================================
# TCP Probing
# ============================================================================

TCP_CONNECT_ATTEMPT_TIMEOUT_SECONDS: Final[float] = 0.5
TCP_RETRY_INTERVAL_SECONDS: Final[float] = 0.3

# ============================================================================
# Process Control
# ============================================================================

EARLY_EXIT_CHECK_SECONDS: Final[float] = 0.6
"""A hypervisor that dies within this window failed to bind its ports."""

STOP_WAIT_SECONDS: Final[float] = 2.5
QMP_TIMEOUT_SECONDS: Final[float] = 5.0
QMP_MAX_EVENTS_PER_RESPONSE: Final[int] = 32

# ============================================================================
# Serial Diagnostics
# ============================================================================

SERIAL_PARTIAL_FLUSH_CHARS: Final[int] = 320
SERIAL_PARTIAL_FLUSH_SECONDS: Final[float] = 2.0
SERIAL_MAX_LINE_CHARS: Final[int] = 360
