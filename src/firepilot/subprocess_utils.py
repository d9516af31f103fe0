"""Helpers around the hypervisor's OS process and its control socket.

- drain_output: read stdout and stderr for the process lifetime
- log_task_exception: done-callback for fire-and-forget tasks
- probe_socket / wait_for_socket: is the control socket accepting connections
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

from firepilot import constants
from firepilot._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from firepilot.platform_utils import ProcessWrapper

    LineCallback = Callable[[str, str], None]

logger = get_logger(__name__)


async def drain_output(process: ProcessWrapper, on_line: LineCallback) -> None:
    """Read stdout and stderr until both reach EOF.

    Both pipes are read at once: firecracker blocks on its next write as
    soon as either 64KB pipe buffer fills, which would freeze the VMM.
    Reads are chunked rather than line-based so a guest console line of
    any length cannot stop the reader; lines longer than
    OUTPUT_MAX_LINE_BYTES are passed on in pieces.

    Args:
        process: Process spawned with piped stdout/stderr
        on_line: Called as ``on_line(stream, line)`` with stream "stdout" or
            "stderr" for every non-empty line, undecodable bytes replaced
    """

    def emit(stream_name: str, raw: bytes) -> None:
        line = raw.decode(errors="replace").rstrip()
        if line:
            on_line(stream_name, line)

    async def pump(stream_name: str, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        pending = b""
        while chunk := await stream.read(constants.OUTPUT_READ_CHUNK_BYTES):
            *lines, pending = (pending + chunk).split(b"\n")
            for raw in lines:
                emit(stream_name, raw)
            while len(pending) > constants.OUTPUT_MAX_LINE_BYTES:
                emit(stream_name, pending[: constants.OUTPUT_MAX_LINE_BYTES])
                pending = pending[constants.OUTPUT_MAX_LINE_BYTES :]
        emit(stream_name, pending)

    async with asyncio.TaskGroup() as tg:
        tg.create_task(pump("stdout", process.stdout))
        tg.create_task(pump("stderr", process.stderr))


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log the failure of a background task nobody awaits.

    Use with ``task.add_done_callback()``.
    """
    if task.cancelled():
        return
    if (exc := task.exception()) is not None:
        logger.error("Background task %s failed", task.get_name(), exc_info=exc)


async def probe_socket(path: Path) -> bool:
    """Return True if something accepts connections on the Unix socket at *path*."""
    try:
        _, writer = await asyncio.open_unix_connection(str(path))
    except OSError:
        return False
    writer.close()
    with contextlib.suppress(OSError):  # Peer closed first
        await writer.wait_closed()
    return True


async def wait_for_socket(
    path: Path,
    *,
    timeout: float,
    poll_interval: float = 0.005,
    abort_check: Callable[[], None] | None = None,
) -> None:
    """Poll until the Unix socket at *path* accepts a connection.

    The file existing is not enough: firecracker binds before it listens,
    and a connect in between is refused.

    Args:
        path: Socket file created by the hypervisor
        timeout: Seconds before giving up
        poll_interval: Seconds between attempts
        abort_check: Called before every attempt; raise from it to stop
            waiting (e.g. the process already exited)

    Raises:
        TimeoutError: Nothing accepted a connection within *timeout*
    """
    async with asyncio.timeout(timeout):
        while True:
            if abort_check is not None:
                abort_check()
            if path.exists() and await probe_socket(path):
                return
            await asyncio.sleep(poll_interval)
