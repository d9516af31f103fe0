"""Host architecture detection and the firecracker process handle.

Signals go through psutil, which remembers the process creation time:
once a PID has been recycled the handle reports the process as gone
instead of signalling an unrelated process.
"""

import asyncio
import contextlib
import platform
import signal
from enum import Enum, auto
from functools import cache

import psutil


class HostArch(Enum):
    """Host CPU architectures Firecracker runs on."""

    X86_64 = auto()
    """x86_64: SendCtrlAltDel is supported (i8042 device)."""

    AARCH64 = auto()
    """aarch64: no i8042 device, guests are stopped by signal only."""

    UNKNOWN = auto()


@cache
def detect_host_arch() -> HostArch:
    match platform.machine().lower():
        case "x86_64" | "amd64":
            return HostArch.X86_64
        case "aarch64" | "arm64":
            return HostArch.AARCH64
        case _:
            return HostArch.UNKNOWN


class ProcessWrapper:
    """asyncio subprocess paired with a psutil handle taken right after spawn.

    Blocking psutil calls (they read /proc) run in a worker thread.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            # Already gone: returncode will say so once it is reaped
            self.psutil_proc = psutil.Process(async_proc.pid)

    @property
    def pid(self) -> int | None:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Exit status once reaped; negative when killed by that signal."""
        return self.async_proc.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.async_proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.async_proc.stderr

    async def is_running(self) -> bool:
        """True until the process exits.  An unreaped zombie counts as exited."""
        if self.async_proc.returncode is not None:
            return False
        ps = self.psutil_proc
        if ps is None:
            return True

        def alive() -> bool:
            return ps.is_running() and ps.status() != psutil.STATUS_ZOMBIE

        try:
            return await asyncio.to_thread(alive)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    async def send_signal(self, sig: signal.Signals) -> None:
        """Deliver *sig* unless the process (or its PID) is already gone.

        Raises:
            ProcessLookupError: Reaped before the signal could be sent
        """
        if self.psutil_proc is not None and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.send_signal, sig)
        else:
            self.async_proc.send_signal(sig)

    async def terminate(self) -> None:
        await self.send_signal(signal.SIGTERM)

    async def kill(self) -> None:
        await self.send_signal(signal.SIGKILL)

    async def wait(self, timeout: float | None = None) -> int:
        """Reap the process and return its exit status.

        stdout/stderr must be drained by a background reader, otherwise a
        process blocked on a full pipe never exits.

        Raises:
            TimeoutError: Still running after *timeout* seconds
        """
        return await asyncio.wait_for(self.async_proc.wait(), timeout)
