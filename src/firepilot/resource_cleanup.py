"""Teardown helpers for microVM resources.

They log failures and report them through their return value instead of
raising, so they are safe in finally blocks and __aexit__.
"""

import asyncio
import contextlib
import signal
from pathlib import Path

import aiofiles.os

from firepilot._logging import get_logger
from firepilot.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    *,
    graceful: bool = True,
    term_timeout: float = 3.0,
    kill_timeout: float = 2.0,
) -> bool:
    """Stop and reap a subprocess.

    Graceful: SIGTERM, then SIGKILL if it is still running after
    *term_timeout*.  Forced: SIGKILL only.  A process that was already
    reaped is left alone.  No zombie is left behind on success.

    Args:
        proc: Process to stop (None is a no-op)
        name: Process name for log messages (e.g. "firecracker")
        context_id: Correlation id for log records (the vm_id)
        graceful: Give the process a chance to exit on SIGTERM first
        term_timeout: Seconds between SIGTERM and SIGKILL
        kill_timeout: Seconds to wait for the reap after SIGKILL

    Returns:
        True if the process is confirmed reaped
    """
    if proc is None or proc.returncode is not None:
        return True

    log_ctx = {"context_id": context_id, "pid": proc.pid}
    try:
        if graceful:
            if await _signal_and_reap(proc, signal.SIGTERM, term_timeout):
                logger.debug("%s exited on SIGTERM", name, extra={**log_ctx, "returncode": proc.returncode})
                return True
            logger.warning("%s ignored SIGTERM for %ss, sending SIGKILL", name, term_timeout, extra=log_ctx)

        if not await _signal_and_reap(proc, signal.SIGKILL, kill_timeout):
            logger.error("%s not reaped %ss after SIGKILL", name, kill_timeout, extra=log_ctx)
            return False
        log = logger.warning if graceful else logger.debug
        log("%s killed", name, extra={**log_ctx, "returncode": proc.returncode})
        return True

    except Exception as e:
        logger.error(
            "%s cleanup failed",
            name,
            extra={**log_ctx, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


async def _signal_and_reap(proc: ProcessWrapper, sig: signal.Signals, timeout: float) -> bool:
    """Send *sig*, then wait up to *timeout* for the exit status.  True once reaped."""
    # Exited between the returncode check and the signal: it still needs reaping
    with contextlib.suppress(ProcessLookupError):
        await proc.send_signal(sig)
    try:
        await proc.wait(timeout)
    except TimeoutError:
        return False
    return True


async def cleanup_task(task: asyncio.Task[None] | None, context_id: str, description: str = "task") -> None:
    """Cancel a background task and wait until it has finished.

    A failure inside the task is logged at debug level, not raised.
    """
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        try:
            await task
        except Exception as e:
            logger.debug(
                "%s ended with %s: %s",
                description,
                type(e).__name__,
                e,
                extra={"context_id": context_id},
            )


async def cleanup_file(file_path: Path | None, context_id: str, description: str = "file") -> bool:
    """Remove *file_path*.  A file that is already gone counts as removed.

    Returns:
        False only when the file exists and could not be removed
    """
    if file_path is None:
        return True
    try:
        await aiofiles.os.remove(file_path)
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.error(
            "Could not remove %s %s: %s",
            description,
            file_path,
            e,
            extra={"context_id": context_id, "error_type": type(e).__name__},
        )
        return False
    logger.debug("Removed %s %s", description, file_path, extra={"context_id": context_id})
    return True
