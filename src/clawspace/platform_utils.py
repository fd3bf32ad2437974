"""Host platform helpers and a PID-reuse safe process wrapper.

Uses psutil's built-in OS detection constants for platform identification.
"""

import asyncio
import contextlib
import os
from enum import Enum, auto
from functools import cache
from pathlib import Path

import psutil


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    MACOS = auto()
    WINDOWS = auto()
    UNKNOWN = auto()


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    if psutil.WINDOWS:
        return HostOS.WINDOWS
    return HostOS.UNKNOWN


def get_data_dir() -> Path:
    """Per-user directory for the trust store and workspace registry.

    Detection order:
    1. CLAWSPACE_DATA_DIR environment variable
    2. Platform default:
       - Linux: $XDG_DATA_HOME/clawspace or ~/.local/share/clawspace
       - macOS: ~/Library/Application Support/clawspace
       - Windows: %LOCALAPPDATA%/clawspace
    """
    if env_path := os.environ.get("CLAWSPACE_DATA_DIR"):
        return Path(env_path)
    match detect_host_os():
        case HostOS.MACOS:
            return Path.home() / "Library" / "Application Support" / "clawspace"
        case HostOS.WINDOWS:
            base = os.environ.get("LOCALAPPDATA")
            return (Path(base) if base else Path.home() / "AppData" / "Local") / "clawspace"
        case _:
            xdg = os.environ.get("XDG_DATA_HOME")
            return (Path(xdg) if xdg else Path.home() / ".local" / "share") / "clawspace"


def default_accelerator() -> str:
    """QEMU accelerator for the host (kvm / hvf / whpx, tcg fallback)."""
    match detect_host_os():
        case HostOS.LINUX:
            return "kvm:tcg" if Path("/dev/kvm").exists() else "tcg"
        case HostOS.MACOS:
            return "hvf:tcg"
        case HostOS.WINDOWS:
            return "whpx:tcg"
        case _:
            return "tcg"


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process for safer PID
    monitoring.  The OS may recycle the PID of a dead hypervisor; psutil's
    create-time check keeps us from signalling an unrelated process.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self.psutil_proc = psutil.Process(async_proc.pid)

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe)."""
        if self.async_proc.returncode is not None:
            return False
        if not self.psutil_proc:
            return True

        try:
            running = await asyncio.to_thread(self.psutil_proc.is_running)
            if running:
                status = await asyncio.to_thread(self.psutil_proc.status)
                return status != psutil.STATUS_ZOMBIE
            return False
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @property
    def pid(self) -> int | None:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    async def wait(self) -> int:
        return await self.async_proc.wait()

    @property
    def stdout(self):
        return self.async_proc.stdout

    @property
    def stderr(self):
        return self.async_proc.stderr

    async def terminate(self) -> None:
        """SIGTERM, via psutil when the PID is still ours."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)
        else:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.terminate()

    async def kill(self) -> None:
        """SIGKILL, via psutil when the PID is still ours."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)
        else:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.kill()

