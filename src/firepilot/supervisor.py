"""Process supervision for the firecracker binary.

ProcessSupervisor owns the hypervisor's OS process: it finds the binary,
spawns it bound to a control socket, waits for the socket to accept
connections, checks liveness, and terminates and reaps it.

Each spawned process is tracked by a HypervisorProcess handle.  The
supervisor itself holds no per-process state, so one instance can serve
any number of microVMs driven from independent tasks.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import shutil
import signal
import stat
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING
from uuid import uuid4

import aiofiles
import aiofiles.os

from firepilot import constants
from firepilot._logging import get_logger
from firepilot.exceptions import ProcessExitedError, SpawnError, VmTimeoutError
from firepilot.platform_utils import ProcessWrapper
from firepilot.resource_cleanup import cleanup_file, cleanup_process, cleanup_task
from firepilot.settings import Settings
from firepilot.subprocess_utils import drain_output, log_task_exception, probe_socket, wait_for_socket

if TYPE_CHECKING:
    from collections.abc import Sequence

    from firepilot.models import VmConfig

logger = get_logger(__name__)

_PROCESS_NAME = "firecracker"


@dataclass
class HypervisorProcess:
    """Handle to one spawned firecracker process.

    Attributes:
        vm_id: Instance id passed to ``--id`` and used for log correlation
        binary_path: Executable that was launched
        socket_path: Control socket the process serves its API on
        process: PID-reuse safe process wrapper
        args: Extra command-line arguments after the supervisor's own
        log_path: Hypervisor log destination given on the command line
        metrics_path: Hypervisor metrics destination given on the command line
        config_file: Configuration file the process booted from
        output_lines: Ring buffer of recent stdout/stderr lines
        drain_task: Background task reading stdout/stderr
    """

    vm_id: str
    binary_path: Path
    socket_path: Path
    process: ProcessWrapper
    args: tuple[str, ...] = ()
    log_path: Path | None = None
    metrics_path: Path | None = None
    config_file: Path | None = None
    output_lines: deque[str] = field(default_factory=lambda: deque(maxlen=constants.OUTPUT_RING_LINES))
    drain_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def output_tail(self, lines: int = constants.OUTPUT_TAIL_LINES) -> list[str]:
        """Last *lines* lines of hypervisor output."""
        return list(self.output_lines)[-lines:]


class ProcessSupervisor:
    """Spawns, watches and stops firecracker processes.

    Usage:
        supervisor = ProcessSupervisor()
        binary = supervisor.locate_binary()
        proc = await supervisor.spawn(binary)
        try:
            await supervisor.wait_ready(proc, timeout=5)
            ...
        finally:
            await supervisor.terminate(proc)
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or Settings()

    @property
    def settings(self) -> Settings:
        return self._settings

    # -------------------------------------------------------------------------
    # Binary discovery
    # -------------------------------------------------------------------------

    def locate_binary(self, explicit: str | Path | None = None) -> Path:
        """Find the firecracker binary.

        Priority (first match wins):
        1. *explicit* argument
        2. FIREPILOT_FIRECRACKER_BIN setting
        3. FIRECRACKER_LOCATION environment variable
        4. ``firecracker`` in $PATH
        5. ``./firecracker`` in the current directory

        Raises:
            SpawnError: A configured path does not exist, or nothing was found.
        """
        configured_sources = (
            ("argument", explicit),
            ("FIREPILOT_FIRECRACKER_BIN", self._settings.firecracker_bin),
        )
        for source, configured in configured_sources:
            if configured is not None:
                path = Path(configured)
                if not path.is_file():
                    raise SpawnError(
                        f"Firecracker binary from {source} not found: {path}",
                        context={"binary_path": str(path), "source": source},
                    )
                return path

        if env_location := os.environ.get(constants.FIRECRACKER_LOCATION_ENV):
            path = Path(env_location)
            if path.is_file():
                return path
            logger.warning(
                "%s is set but the file does not exist: %s",
                constants.FIRECRACKER_LOCATION_ENV,
                env_location,
            )

        if found := shutil.which(constants.FIRECRACKER_BINARY_NAME):
            return Path(found)

        local = Path.cwd() / constants.FIRECRACKER_BINARY_NAME
        if local.is_file():
            return local

        raise SpawnError(
            "Unable to find the firecracker binary. "
            f"Set {constants.FIRECRACKER_LOCATION_ENV} or FIREPILOT_FIRECRACKER_BIN, or add it to $PATH."
        )

    def socket_path_for(self, vm_id: str) -> Path:
        """Default control socket location for *vm_id*."""
        return self._settings.workspace_dir / vm_id / constants.SOCKET_FILE_NAME

    # -------------------------------------------------------------------------
    # Spawn / readiness
    # -------------------------------------------------------------------------

    async def spawn(
        self,
        binary_path: str | Path,
        socket_path: str | Path | None = None,
        args: Sequence[str] = (),
        *,
        vm_id: str | None = None,
        log_path: str | Path | None = None,
        metrics_path: str | Path | None = None,
        config_file: str | Path | None = None,
    ) -> HypervisorProcess:
        """Launch firecracker serving its API on *socket_path*.

        When *socket_path* is None a fresh one is chosen inside the VM's
        workspace.  A leftover socket file with nothing listening on it is
        removed first; any other kind of file at that path is left alone.

        Args:
            binary_path: Path to the firecracker executable
            socket_path: Control socket path (default: workspace/vm_id/firecracker.socket)
            args: Additional command-line arguments
            vm_id: Instance id (default: random UUID)
            log_path: Passed as ``--log-path`` (file/FIFO created by the caller)
            metrics_path: Passed as ``--metrics-path`` (file/FIFO created by the caller)
            config_file: Passed as ``--config-file`` to boot without API calls

        Returns:
            Handle to the running process

        Raises:
            SpawnError: Binary missing or not executable, socket path taken by
                a live process or a non-socket file, or the OS refused to start it.
        """
        binary = Path(binary_path)
        vm_id = vm_id or str(uuid4())
        context: dict[str, object] = {"vm_id": vm_id, "binary_path": str(binary)}

        if not re.fullmatch(constants.VM_ID_PATTERN, vm_id):
            raise SpawnError(
                f"Invalid vm_id {vm_id!r}: use 1-64 ASCII letters, digits or '-'",
                context=context,
            )
        if not binary.is_file():
            raise SpawnError(f"Firecracker binary not found: {binary}", context=context)
        if not os.access(binary, os.X_OK):
            raise SpawnError(f"Firecracker binary is not executable: {binary}", context=context)

        socket = Path(socket_path) if socket_path is not None else self.socket_path_for(vm_id)
        context["socket_path"] = str(socket)

        try:
            mode: int | None = socket.lstat().st_mode
        except FileNotFoundError:
            mode = None
        if mode is not None:
            if not stat.S_ISSOCK(mode):
                raise SpawnError(f"Control socket path exists and is not a socket: {socket}", context=context)
            if await probe_socket(socket):
                raise SpawnError(f"Control socket already in use by a live process: {socket}", context=context)
            logger.debug("Removing stale control socket", extra=context)
            if not await cleanup_file(socket, vm_id, "stale control socket"):
                raise SpawnError(f"Stale control socket could not be removed: {socket}", context=context)

        try:
            await aiofiles.os.makedirs(socket.parent, exist_ok=True)
        except OSError as e:
            raise SpawnError(f"Could not create workspace {socket.parent}: {e}", context=context) from e

        cmd = [str(binary), "--api-sock", str(socket), "--id", vm_id]
        if log_path is not None:
            cmd += ["--log-path", str(log_path)]
        if metrics_path is not None:
            cmd += ["--metrics-path", str(metrics_path)]
        if config_file is not None:
            cmd += ["--config-file", str(config_file)]
        cmd += list(args)

        logger.debug("Spawning firecracker: %s", " ".join(cmd), extra=context)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnError(f"Failed to spawn firecracker: {e}", context=context) from e

        hv = HypervisorProcess(
            vm_id=vm_id,
            binary_path=binary,
            socket_path=socket,
            process=ProcessWrapper(proc),
            args=tuple(args),
            log_path=Path(log_path) if log_path is not None else None,
            metrics_path=Path(metrics_path) if metrics_path is not None else None,
            config_file=Path(config_file) if config_file is not None else None,
        )
        hv.drain_task = asyncio.create_task(
            drain_output(hv.process, self._output_handler(hv)),
            name=f"firecracker-output-{vm_id}",
        )
        hv.drain_task.add_done_callback(log_task_exception)

        logger.info("Firecracker spawned", extra={**context, "pid": hv.pid})
        return hv

    async def wait_ready(self, process: HypervisorProcess, timeout: float | None = None) -> None:
        """Wait until the control socket accepts connections.

        Args:
            process: Process returned by spawn()
            timeout: Seconds to wait (default: settings.ready_timeout_seconds)

        Raises:
            VmTimeoutError: Socket not connectable within timeout
            ProcessExitedError: Process exited before the socket was ready
        """
        timeout = self._settings.ready_timeout_seconds if timeout is None else timeout

        def abort_if_exited() -> None:
            if process.returncode is not None:
                raise self.exited_error(process, "before its control socket was ready")

        try:
            await wait_for_socket(
                process.socket_path,
                timeout=timeout,
                poll_interval=constants.READY_POLL_INTERVAL_SECONDS,
                abort_check=abort_if_exited,
            )
        except TimeoutError as e:
            abort_if_exited()
            raise VmTimeoutError(
                f"Control socket not ready after {timeout}s",
                context={"vm_id": process.vm_id, "socket_path": str(process.socket_path), "timeout": timeout},
            ) from e

        logger.debug("Control socket ready", extra={"vm_id": process.vm_id, "socket_path": str(process.socket_path)})

    # -------------------------------------------------------------------------
    # Liveness / termination
    # -------------------------------------------------------------------------

    async def is_alive(self, process: HypervisorProcess) -> bool:
        """Non-blocking liveness check (PID-reuse safe)."""
        return await process.process.is_running()

    async def wait_exit(self, process: HypervisorProcess, timeout: float) -> int | None:
        """Wait up to *timeout* seconds for the process to exit on its own.

        Returns:
            Exit code, or None if the process is still running
        """
        try:
            return await process.process.wait(timeout)
        except TimeoutError:
            return None

    async def terminate(self, process: HypervisorProcess, graceful: bool = True) -> bool:
        """Stop the process, reap it, and remove its control socket.

        Idempotent: terminating an already-dead process is a no-op that
        still completes the cleanup.  Never raises.

        Args:
            process: Process returned by spawn()
            graceful: SIGTERM first and wait term_timeout_seconds; otherwise SIGKILL

        Returns:
            True if the process is confirmed reaped
        """
        reaped = await cleanup_process(
            process.process,
            _PROCESS_NAME,
            process.vm_id,
            graceful=graceful,
            term_timeout=self._settings.term_timeout_seconds,
            kill_timeout=self._settings.kill_timeout_seconds,
        )
        if reaped and process.drain_task is not None and not process.drain_task.done():
            # Pipes hit EOF shortly after exit; let the drain read what is buffered
            await asyncio.wait({process.drain_task}, timeout=constants.OUTPUT_DRAIN_GRACE_SECONDS)
        await cleanup_task(process.drain_task, process.vm_id, "firecracker output drain")
        await cleanup_file(process.socket_path, process.vm_id, "control socket")

        if reaped:
            logger.info(
                "Firecracker terminated",
                extra={"vm_id": process.vm_id, "pid": process.pid, "returncode": process.returncode},
            )
        return reaped

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def write_config_file(self, config: VmConfig, path: str | Path) -> Path:
        """Write *config* in ``--config-file`` format.

        Returns:
            The path written
        """
        target = Path(path)
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        async with aiofiles.open(target, "w") as f:
            await f.write(json.dumps(config.to_config_file(), indent=2))
        return target

    def exited_error(self, process: HypervisorProcess, when: str) -> ProcessExitedError:
        """Build a ProcessExitedError carrying exit status and recent output."""
        code = process.returncode
        detail = f"exit code {code}"
        if code is not None and code < 0:
            try:
                detail += f", {signal.Signals(-code).name}"
            except ValueError:
                pass  # Unknown signal number
        tail = process.output_tail()
        return ProcessExitedError(
            f"firecracker exited ({detail}) {when}",
            context={"vm_id": process.vm_id, "socket_path": str(process.socket_path), "output": tail},
            exit_code=code,
            output=tail,
        )

    @staticmethod
    def _output_handler(process: HypervisorProcess):
        def handle(stream: str, line: str) -> None:
            process.output_lines.append(line)
            log = logger.debug if stream == "stdout" else logger.warning
            log(f"[firecracker {stream}] {line}", extra={"vm_id": process.vm_id, "output": line})

        return handle
