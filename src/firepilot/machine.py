"""High-level microVM facade.

Machine runs the fixed safe sequence over an Executor: create() spawns
the hypervisor, waits for its control plane and applies a VmConfig;
start/pause/resume/stop map one-to-one to Executor transitions.  Use the
Executor directly for anything outside that sequence.
"""

from __future__ import annotations

import types
from typing import TYPE_CHECKING

from firepilot._logging import get_logger
from firepilot.executor import Executor

if TYPE_CHECKING:
    from pathlib import Path
    from typing import Self

    from firepilot.models import VmConfig
    from firepilot.settings import Settings
    from firepilot.supervisor import ProcessSupervisor
    from firepilot.vm_types import VmState

logger = get_logger(__name__)


class Machine:
    """A configured microVM ready to boot.

    Usage:
        async with await Machine.create(config) as vm:
            await vm.start()
            ...
            await vm.stop()

    Exiting the context kills the process if it is still alive.
    """

    def __init__(self, executor: Executor, config: VmConfig):
        self._executor = executor
        self._config = config

    @classmethod
    async def create(
        cls,
        config: VmConfig,
        *,
        vm_id: str | None = None,
        binary_path: str | Path | None = None,
        settings: Settings | None = None,
        supervisor: ProcessSupervisor | None = None,
        ready_timeout: float | None = None,
        executor: Executor | None = None,
    ) -> Self:
        """Spawn firecracker, wait for it, and apply *config*.

        The returned Machine is CONFIGURED.  If any step fails the spawned
        process is killed before the error propagates unchanged.

        Args:
            config: Complete microVM configuration
            vm_id: Instance id (default: random UUID)
            binary_path: Firecracker binary (default: discovered)
            settings: Runtime settings (default: from environment)
            supervisor: Process supervisor to spawn with
            ready_timeout: Seconds to wait for the control plane
            executor: Pre-built executor in CREATED (overrides the arguments above)

        Raises:
            SpawnError: Process could not be created
            VmTimeoutError: Control plane not reachable in time
            ProcessExitedError: Process died before it was ready
            ApiError: Hypervisor rejected part of the configuration
            TransportError: Socket failed during configuration
        """
        if executor is None:
            executor = Executor(binary_path, vm_id=vm_id, supervisor=supervisor, settings=settings)
        try:
            await executor.spawn()
            await executor.wait_ready(ready_timeout)
            await executor.configure(config)
        except BaseException:
            await executor.kill()
            raise
        logger.info("MicroVM configured", extra={"vm_id": executor.vm_id, "socket_path": str(executor.socket_path)})
        return cls(executor, config)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.kill()

    @property
    def executor(self) -> Executor:
        return self._executor

    @property
    def config(self) -> VmConfig:
        return self._config

    @property
    def state(self) -> VmState:
        return self._executor.state

    @property
    def vm_id(self) -> str:
        return self._executor.vm_id

    @property
    def socket_path(self) -> Path | None:
        return self._executor.socket_path

    async def start(self) -> None:
        """Boot the guest (CONFIGURED -> RUNNING)."""
        await self._executor.start()

    async def pause(self) -> None:
        await self._executor.pause()

    async def resume(self) -> None:
        await self._executor.resume()

    async def stop(self, graceful: bool = True, timeout: float | None = None) -> None:
        """Shut the guest down and reap the process."""
        await self._executor.stop(graceful=graceful, timeout=timeout)

    async def kill(self) -> None:
        """Force-terminate.  No-op once terminated."""
        await self._executor.kill()
