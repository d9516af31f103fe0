"""Lifecycle state machine for one Firecracker microVM.

The Executor sequences ProcessSupervisor actions and control-socket calls
in the order the hypervisor requires, and rejects anything the current
state does not allow:

    CREATED -> CONFIGURING -> CONFIGURED -> BOOTING -> RUNNING <-> PAUSED
            -> STOPPING -> TERMINATED

TERMINATED is reachable from every state through kill(), recorded as an
abnormal transition.  Once terminated, every operation except kill()
raises AlreadyTerminatedError without touching the socket.

Calls on one Executor are serialized by a per-executor lock.  Drive each
microVM from its own task; independent Executors share nothing.
"""

from __future__ import annotations

import asyncio
import contextlib
import types
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from tenacity import AsyncRetrying, retry_if_exception_type, wait_random_exponential

from firepilot import constants
from firepilot._logging import get_logger
from firepilot.api_client import ApiClient
from firepilot.exceptions import (
    AlreadyTerminatedError,
    ApiError,
    FirepilotError,
    LifecycleError,
    TransportError,
    VmTimeoutError,
)
from firepilot.models import (
    ActionType,
    Balloon,
    BalloonStats,
    BalloonStatsUpdate,
    BalloonUpdate,
    BootSource,
    Drive,
    InstanceActionInfo,
    InstanceInfo,
    Logger,
    MachineConfig,
    MachineConfigUpdate,
    Metrics,
    MmdsConfig,
    NetworkInterface,
    PartialDrive,
    PartialNetworkInterface,
    VmmVersion,
    VmStateRequest,
    VmStateUpdate,
    Vsock,
)
from firepilot.platform_utils import HostArch, detect_host_arch
from firepilot.settings import Settings
from firepilot.supervisor import HypervisorProcess, ProcessSupervisor
from firepilot.vm_types import VALID_STATE_TRANSITIONS, StateTransition, VmState

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterator, Sequence, Set
    from typing import Self

    from firepilot.models import VmConfig

    ClientFactory = Callable[[Path, float], ApiClient]

logger = get_logger(__name__)

_PRE_BOOT = frozenset({VmState.CONFIGURING, VmState.CONFIGURED})
_POST_BOOT = frozenset({VmState.RUNNING, VmState.PAUSED})


def _default_client_factory(socket_path: Path, timeout: float) -> ApiClient:
    return ApiClient(socket_path, timeout=timeout)


class Executor:
    """Low-level, fully controllable driver for one microVM.

    Usage:
        async with Executor(vm_id="web-1") as ex:
            await ex.spawn()
            await ex.wait_ready()
            await ex.configure(config)
            await ex.start()
            ...
            await ex.stop()

    Attributes:
        history: Every state transition performed, oldest first
    """

    def __init__(
        self,
        binary_path: str | Path | None = None,
        *,
        vm_id: str | None = None,
        supervisor: ProcessSupervisor | None = None,
        settings: Settings | None = None,
        client_factory: ClientFactory | None = None,
    ):
        """Initialize an executor in CREATED with no process.

        Args:
            binary_path: Firecracker binary (default: discovered on spawn)
            vm_id: Instance id (default: random UUID)
            supervisor: Process supervisor (default: one built from settings)
            settings: Runtime settings (default: the supervisor's, or from environment)
            client_factory: Builds the ApiClient for a socket path and request timeout
        """
        if settings is None:
            settings = supervisor.settings if supervisor is not None else Settings()
        self._settings = settings
        self._supervisor = supervisor or ProcessSupervisor(settings)
        self._binary_path = Path(binary_path) if binary_path is not None else None
        self._vm_id = vm_id or str(uuid4())
        self._client_factory: ClientFactory = client_factory or _default_client_factory

        self._state = VmState.CREATED
        self._lock = asyncio.Lock()
        self._process: HypervisorProcess | None = None
        self._client: ApiClient | None = None
        # No rollback exists on the hypervisor side; a failed configure poisons this process
        self._configure_failed = False
        self.history: list[StateTransition] = []

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.kill()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> VmState:
        return self._state

    @property
    def vm_id(self) -> str:
        return self._vm_id

    @property
    def process(self) -> HypervisorProcess | None:
        return self._process

    @property
    def socket_path(self) -> Path | None:
        return self._process.socket_path if self._process is not None else None

    @property
    def client(self) -> ApiClient | None:
        return self._client

    # -------------------------------------------------------------------------
    # Process
    # -------------------------------------------------------------------------

    async def spawn(
        self,
        socket_path: str | Path | None = None,
        args: Sequence[str] = (),
        *,
        log_path: str | Path | None = None,
        metrics_path: str | Path | None = None,
        config_file: str | Path | None = None,
    ) -> HypervisorProcess:
        """Launch the hypervisor process.  State stays CREATED.

        Raises:
            SpawnError: Binary missing or unusable, or socket already served
            LifecycleError: A process was already spawned
        """
        async with self._operation("spawn", {VmState.CREATED}):
            if self._process is not None:
                raise self._lifecycle_error("spawn", "process already spawned")
            binary = self._binary_path or self._supervisor.locate_binary()
            self._process = await self._supervisor.spawn(
                binary,
                socket_path,
                args,
                vm_id=self._vm_id,
                log_path=log_path,
                metrics_path=metrics_path,
                config_file=config_file,
            )
            self._client = self._client_factory(self._process.socket_path, self._settings.request_timeout_seconds)
            return self._process

    async def wait_ready(self, timeout: float | None = None) -> InstanceInfo:
        """Wait for the control plane to answer, then enter CONFIGURING.

        First waits for the socket to accept connections, then probes
        ``GET /`` until it answers, retrying TransportError with jittered
        backoff.  Both phases share one deadline.

        Args:
            timeout: Seconds for both phases (default: settings.ready_timeout_seconds)

        Returns:
            Instance description from the first successful probe

        Raises:
            VmTimeoutError: Not reachable in time (state stays CREATED)
            ProcessExitedError: Process exited first (state stays CREATED)
        """
        async with self._operation("wait_ready", {VmState.CREATED}):
            process, client = self._require_process("wait_ready")
            timeout = self._settings.ready_timeout_seconds if timeout is None else timeout
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout

            await self._supervisor.wait_ready(process, timeout)

            try:
                async with asyncio.timeout_at(deadline):
                    async for attempt in AsyncRetrying(
                        retry=retry_if_exception_type(TransportError),
                        wait=wait_random_exponential(multiplier=0.02, min=0.005, max=0.05),
                        reraise=True,
                    ):
                        with attempt:
                            if process.returncode is not None:
                                raise self._supervisor.exited_error(process, "before answering API requests")
                            info = await client.describe_instance()
            except TimeoutError as e:
                raise VmTimeoutError(
                    f"Control plane did not answer within {timeout}s",
                    context={"socket_path": str(process.socket_path), "timeout": timeout},
                ) from e

            self._transition(VmState.CONFIGURING, "wait_ready")
            logger.info(
                "Firecracker control plane ready",
                extra={"vm_id": self._vm_id, "vmm_version": info.vmm_version, "instance_state": info.state},
            )
            return info

    # -------------------------------------------------------------------------
    # Pre-boot configuration
    # -------------------------------------------------------------------------

    async def configure(self, config: VmConfig) -> None:
        """Apply a full configuration and enter CONFIGURED.

        Resources are PUT one by one in a fixed order regardless of how
        *config* was built: boot source, machine config, logger, metrics,
        drives, network interfaces, MMDS, vsock, balloon.

        The first failure aborts.  The state stays CONFIGURING and later
        configure() calls are refused: a fresh process is required.

        Raises:
            ApiError: Hypervisor rejected a resource
            TransportError: Socket failed mid-sequence
            LifecycleError: Not in CONFIGURING, or an earlier configure failed
        """
        async with self._operation("configure", {VmState.CONFIGURING}):
            if self._configure_failed:
                raise self._lifecycle_error(
                    "configure",
                    "an earlier configuration attempt failed; spawn a fresh process to reconfigure",
                )
            _, client = self._require_process("configure")
            for path, body in _configuration_requests(config):
                try:
                    await client.put(path, body)
                except (ApiError, TransportError):
                    self._configure_failed = True
                    raise
            self._transition(VmState.CONFIGURED, "configure")

    async def mark_configured(self) -> None:
        """Enter CONFIGURED after configuring through the individual put_* calls."""
        async with self._operation("mark_configured", {VmState.CONFIGURING}):
            self._transition(VmState.CONFIGURED, "mark_configured")

    async def put_boot_source(self, boot_source: BootSource) -> None:
        await self._pre_boot_put("put_boot_source", constants.PATH_BOOT_SOURCE, boot_source)

    async def put_machine_config(self, machine_config: MachineConfig) -> None:
        await self._pre_boot_put("put_machine_config", constants.PATH_MACHINE_CONFIG, machine_config)

    async def patch_machine_config(self, update: MachineConfigUpdate) -> None:
        async with self._operation("patch_machine_config", _PRE_BOOT):
            _, client = self._require_process("patch_machine_config")
            await client.patch(constants.PATH_MACHINE_CONFIG, update)

    async def put_logger(self, logger_config: Logger) -> None:
        await self._pre_boot_put("put_logger", constants.PATH_LOGGER, logger_config)

    async def put_metrics(self, metrics: Metrics) -> None:
        await self._pre_boot_put("put_metrics", constants.PATH_METRICS, metrics)

    async def put_drive(self, drive: Drive) -> None:
        await self._pre_boot_put("put_drive", f"{constants.PATH_DRIVES}/{drive.drive_id}", drive)

    async def put_network_interface(self, iface: NetworkInterface) -> None:
        await self._pre_boot_put(
            "put_network_interface", f"{constants.PATH_NETWORK_INTERFACES}/{iface.iface_id}", iface
        )

    async def put_mmds_config(self, mmds_config: MmdsConfig) -> None:
        await self._pre_boot_put("put_mmds_config", constants.PATH_MMDS_CONFIG, mmds_config)

    async def put_mmds(self, data: dict[str, Any]) -> None:
        """Replace the MMDS data store contents."""
        await self._pre_boot_put("put_mmds", constants.PATH_MMDS, data)

    async def put_vsock(self, vsock: Vsock) -> None:
        await self._pre_boot_put("put_vsock", constants.PATH_VSOCK, vsock)

    async def put_balloon(self, balloon: Balloon) -> None:
        await self._pre_boot_put("put_balloon", constants.PATH_BALLOON, balloon)

    # -------------------------------------------------------------------------
    # Boot / pause / resume
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Boot the guest: CONFIGURED -> BOOTING -> RUNNING.

        InstanceStart is sent exactly once.  On failure the process is
        killed, the executor ends in TERMINATED and the cause is raised
        (ProcessExitedError when the process died).

        Raises:
            ApiError: Hypervisor refused to start
            TransportError: Socket failed during the request
            ProcessExitedError: Process exited during boot
        """
        async with self._operation("start", {VmState.CONFIGURED}):
            process, client = self._require_process("start")
            self._transition(VmState.BOOTING, "start")
            try:
                await client.put(constants.PATH_ACTIONS, InstanceActionInfo(action_type=ActionType.INSTANCE_START))
            except (ApiError, TransportError) as e:
                exited = not await self._supervisor.is_alive(process)
                logger.warning(
                    "InstanceStart failed, terminating firecracker",
                    extra={"vm_id": self._vm_id, "error": str(e), "process_exited": exited},
                )
                await self._terminate_process(graceful=False)
                self._transition(VmState.TERMINATED, "start", abnormal=True)
                if exited:
                    raise self._supervisor.exited_error(process, "during boot") from e
                raise
            self._transition(VmState.RUNNING, "start")
            logger.info("MicroVM running", extra={"vm_id": self._vm_id, "pid": process.pid})

    async def pause(self) -> None:
        """RUNNING -> PAUSED.  State is unchanged if the hypervisor refuses."""
        async with self._operation("pause", {VmState.RUNNING}):
            _, client = self._require_process("pause")
            await client.patch(constants.PATH_VM, VmStateUpdate(state=VmStateRequest.PAUSED))
            self._transition(VmState.PAUSED, "pause")

    async def resume(self) -> None:
        """PAUSED -> RUNNING.  State is unchanged if the hypervisor refuses."""
        async with self._operation("resume", {VmState.PAUSED}):
            _, client = self._require_process("resume")
            await client.patch(constants.PATH_VM, VmStateUpdate(state=VmStateRequest.RESUMED))
            self._transition(VmState.RUNNING, "resume")

    # -------------------------------------------------------------------------
    # Runtime updates (RUNNING or PAUSED)
    # -------------------------------------------------------------------------

    async def update_drive(self, update: PartialDrive) -> None:
        """Swap a drive's backing file or rate limiter on a booted guest."""
        await self._post_boot_patch("update_drive", f"{constants.PATH_DRIVES}/{update.drive_id}", update)

    async def update_network_interface(self, update: PartialNetworkInterface) -> None:
        await self._post_boot_patch(
            "update_network_interface", f"{constants.PATH_NETWORK_INTERFACES}/{update.iface_id}", update
        )

    async def update_balloon(self, update: BalloonUpdate) -> None:
        await self._post_boot_patch("update_balloon", constants.PATH_BALLOON, update)

    async def update_balloon_stats(self, update: BalloonStatsUpdate) -> None:
        await self._post_boot_patch("update_balloon_stats", constants.PATH_BALLOON_STATS, update)

    async def patch_mmds(self, data: dict[str, Any]) -> None:
        """Merge *data* into the MMDS data store."""
        await self._post_boot_patch("patch_mmds", constants.PATH_MMDS, data)

    async def flush_metrics(self) -> None:
        async with self._operation("flush_metrics", _POST_BOOT):
            _, client = self._require_process("flush_metrics")
            await client.put(constants.PATH_ACTIONS, InstanceActionInfo(action_type=ActionType.FLUSH_METRICS))

    async def send_ctrl_alt_del(self) -> None:
        """Ask the guest to shut down (x86_64 only).  Does not change state."""
        async with self._operation("send_ctrl_alt_del", {VmState.RUNNING}):
            _, client = self._require_process("send_ctrl_alt_del")
            await client.put(constants.PATH_ACTIONS, InstanceActionInfo(action_type=ActionType.SEND_CTRL_ALT_DEL))

    # -------------------------------------------------------------------------
    # Diagnostics (any state but TERMINATED)
    # -------------------------------------------------------------------------

    async def describe_instance(self) -> InstanceInfo:
        async with self._operation("describe_instance", None):
            _, client = self._require_process("describe_instance")
            return await client.describe_instance()

    async def get_version(self) -> VmmVersion:
        async with self._operation("get_version", None):
            _, client = self._require_process("get_version")
            return await client.get_version()

    async def get_machine_config(self) -> MachineConfig:
        async with self._operation("get_machine_config", None):
            _, client = self._require_process("get_machine_config")
            return await client.get_machine_config()

    async def get_balloon(self) -> Balloon:
        async with self._operation("get_balloon", None):
            _, client = self._require_process("get_balloon")
            return await client.get_balloon()

    async def get_balloon_stats(self) -> BalloonStats:
        async with self._operation("get_balloon_stats", None):
            _, client = self._require_process("get_balloon_stats")
            return await client.get_balloon_stats()

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def stop(self, graceful: bool = True, timeout: float | None = None) -> None:
        """RUNNING|PAUSED -> STOPPING -> TERMINATED.

        With *graceful* on an x86_64 host and a running guest, SendCtrlAltDel
        is sent and the process is given *timeout* seconds to exit.  Whatever
        is still alive afterwards is terminated (SIGTERM, then SIGKILL).
        A paused guest cannot act on the request, so it goes straight to
        termination.  A process that already exited gets no request and
        counts as a clean stop.

        The executor ends in TERMINATED even when the shutdown request
        fails; that failure is raised after the process was terminated.

        Args:
            graceful: Request a guest shutdown before signalling
            timeout: Seconds to wait for the guest (default: settings.shutdown_timeout_seconds)

        Raises:
            ApiError: SendCtrlAltDel rejected
            TransportError: Socket failed during the shutdown request
        """
        async with self._operation("stop", _POST_BOOT):
            process, client = self._require_process("stop")
            previous = self._state
            self._transition(VmState.STOPPING, "stop")

            shutdown_error: FirepilotError | None = None
            exited_cleanly = False
            try:
                if not await self._supervisor.is_alive(process):
                    # Guest powered off on its own: nothing left to ask
                    logger.debug("Firecracker already exited before stop", extra={"vm_id": self._vm_id})
                    exited_cleanly = True
                elif graceful and previous is VmState.RUNNING and detect_host_arch() is HostArch.X86_64:
                    timeout = self._settings.shutdown_timeout_seconds if timeout is None else timeout
                    try:
                        await client.put(
                            constants.PATH_ACTIONS, InstanceActionInfo(action_type=ActionType.SEND_CTRL_ALT_DEL)
                        )
                    except (ApiError, TransportError) as e:
                        shutdown_error = e
                    else:
                        exit_code = await self._supervisor.wait_exit(process, timeout)
                        exited_cleanly = exit_code is not None
                        if not exited_cleanly:
                            logger.warning(
                                "Guest did not shut down in time, terminating firecracker",
                                extra={"vm_id": self._vm_id, "timeout": timeout},
                            )
            finally:
                await self._terminate_process(graceful=True)
                self._transition(VmState.TERMINATED, "stop", abnormal=not exited_cleanly)

            if shutdown_error is not None:
                raise shutdown_error

    async def kill(self) -> None:
        """Force-terminate from any state.  No-op once TERMINATED.

        Safe from cleanup paths: never raises for an already-dead process.
        """
        async with self._lock:
            if self._state is VmState.TERMINATED:
                return
            await self._terminate_process(graceful=False)
            self._transition(VmState.TERMINATED, "kill", abnormal=True)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _operation(self, operation: str, allowed: Set[VmState] | None) -> AsyncIterator[None]:
        """Serialize *operation*, check its state guard and tag its errors.

        Args:
            operation: Name used in errors and logs
            allowed: States the operation may run in (None: any but TERMINATED)
        """
        async with self._lock:
            if self._state is VmState.TERMINATED:
                raise AlreadyTerminatedError(
                    f"{operation}: microVM {self._vm_id} is already terminated",
                    state=self._state.value,
                    operation=operation,
                    context={"vm_id": self._vm_id},
                )
            if allowed is not None and self._state not in allowed:
                raise self._lifecycle_error(
                    operation,
                    f"not allowed in state {self._state.value} "
                    f"(allowed: {', '.join(sorted(s.value for s in allowed))})",
                )
            try:
                yield
            except FirepilotError as e:
                e.context.setdefault("vm_id", self._vm_id)
                e.context.setdefault("state", self._state.value)
                e.context.setdefault("operation", operation)
                logger.debug(
                    f"{operation} failed: {e.message}",
                    extra={"vm_id": self._vm_id, "state": self._state.value, "error_type": type(e).__name__},
                )
                raise

    def _lifecycle_error(self, operation: str, reason: str) -> LifecycleError:
        return LifecycleError(
            f"{operation}: {reason}",
            state=self._state.value,
            operation=operation,
            context={"vm_id": self._vm_id},
        )

    def _require_process(self, operation: str) -> tuple[HypervisorProcess, ApiClient]:
        if self._process is None or self._client is None:
            raise self._lifecycle_error(operation, "no hypervisor process; call spawn() first")
        return self._process, self._client

    def _transition(self, new_state: VmState, operation: str, *, abnormal: bool = False) -> None:
        """Move to *new_state*.  Caller holds the lock."""
        if new_state not in VALID_STATE_TRANSITIONS.get(self._state, set()):
            raise self._lifecycle_error(
                operation, f"invalid state transition: {self._state.value} -> {new_state.value}"
            )
        transition = StateTransition(old=self._state, new=new_state, operation=operation, abnormal=abnormal)
        self.history.append(transition)
        self._state = new_state
        log = logger.warning if abnormal else logger.debug
        log(
            "VM state transition",
            extra={
                "vm_id": self._vm_id,
                "old_state": transition.old.value,
                "new_state": transition.new.value,
                "operation": operation,
                "abnormal": abnormal,
            },
        )

    async def _pre_boot_put(self, operation: str, path: str, body: Any) -> None:
        async with self._operation(operation, _PRE_BOOT):
            _, client = self._require_process(operation)
            await client.put(path, body)

    async def _post_boot_patch(self, operation: str, path: str, body: Any) -> None:
        async with self._operation(operation, _POST_BOOT):
            _, client = self._require_process(operation)
            await client.patch(path, body)

    async def _terminate_process(self, *, graceful: bool) -> None:
        """Terminate and reap the process, then close the client.  Never raises."""
        if self._process is not None:
            reaped = await self._supervisor.terminate(self._process, graceful=graceful)
            if not reaped:
                logger.error(
                    "Firecracker could not be confirmed reaped",
                    extra={"vm_id": self._vm_id, "pid": self._process.pid},
                )
        if self._client is not None:
            await self._client.close()


def _configuration_requests(config: VmConfig) -> Iterator[tuple[str, Any]]:
    """Yield (path, body) for every resource of *config* in application order."""
    yield constants.PATH_BOOT_SOURCE, config.boot_source
    if config.machine_config is not None:
        yield constants.PATH_MACHINE_CONFIG, config.machine_config
    if config.logger is not None:
        yield constants.PATH_LOGGER, config.logger
    if config.metrics is not None:
        yield constants.PATH_METRICS, config.metrics
    for drive in config.drives:
        yield f"{constants.PATH_DRIVES}/{drive.drive_id}", drive
    for iface in config.network_interfaces:
        yield f"{constants.PATH_NETWORK_INTERFACES}/{iface.iface_id}", iface
    if config.mmds_config is not None:
        yield constants.PATH_MMDS_CONFIG, config.mmds_config
    if config.mmds_data is not None:
        yield constants.PATH_MMDS, config.mmds_data
    if config.vsock is not None:
        yield constants.PATH_VSOCK, config.vsock
    if config.balloon is not None:
        yield constants.PATH_BALLOON, config.balloon
