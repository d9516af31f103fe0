"""firepilot: control-plane client and process supervisor for Firecracker microVMs.

Drives the firecracker binary through its Unix-socket REST API with an
explicit lifecycle state machine.

Quick Start:
    ```python
    from firepilot import BootSource, Drive, Machine, MachineConfig, VmConfig

    config = VmConfig(
        boot_source=BootSource(kernel_image_path="vmlinux", boot_args="console=ttyS0 reboot=k panic=1"),
        drives=[Drive(drive_id="rootfs", path_on_host="rootfs.ext4", is_root_device=True)],
        machine_config=MachineConfig(vcpu_count=2, mem_size_mib=512),
    )
    async with await Machine.create(config) as vm:
        await vm.start()
        ...
        await vm.stop()
    ```

Low-level control:
    ```python
    from firepilot import Executor

    async with Executor(vm_id="web-1") as ex:
        await ex.spawn()
        await ex.wait_ready()
        await ex.put_boot_source(boot_source)
        await ex.put_drive(rootfs)
        await ex.mark_configured()
        await ex.start()
    ```

Requirements:
    - Linux host with KVM
    - firecracker binary (FIRECRACKER_LOCATION, FIREPILOT_FIRECRACKER_BIN or $PATH)
    - Python 3.12+
"""

from firepilot._logging import configure_logging
from firepilot.api_client import ApiClient
from firepilot.exceptions import (
    AlreadyTerminatedError,
    ApiError,
    ConfigValidationError,
    FirepilotError,
    InputValidationError,
    LifecycleError,
    PermanentError,
    ProcessExitedError,
    SpawnError,
    TransientError,
    TransportError,
    VmTimeoutError,
)
from firepilot.executor import Executor
from firepilot.machine import Machine
from firepilot.models import (
    Balloon,
    BalloonStatsUpdate,
    BalloonUpdate,
    BootSource,
    CacheType,
    CpuTemplate,
    Drive,
    HugePages,
    InstanceInfo,
    IoEngine,
    Logger,
    LogLevel,
    MachineConfig,
    MachineConfigUpdate,
    Metrics,
    MmdsConfig,
    MmdsVersion,
    NetworkInterface,
    PartialDrive,
    PartialNetworkInterface,
    RateLimiter,
    TokenBucket,
    VmConfig,
    Vsock,
)
from firepilot.settings import Settings
from firepilot.supervisor import HypervisorProcess, ProcessSupervisor
from firepilot.vm_types import StateTransition, VmState

__all__ = [
    "AlreadyTerminatedError",
    "ApiClient",
    "ApiError",
    "Balloon",
    "BalloonStatsUpdate",
    "BalloonUpdate",
    "BootSource",
    "CacheType",
    "ConfigValidationError",
    "CpuTemplate",
    "Drive",
    "Executor",
    "FirepilotError",
    "HugePages",
    "HypervisorProcess",
    "InputValidationError",
    "InstanceInfo",
    "IoEngine",
    "LifecycleError",
    "LogLevel",
    "Logger",
    "Machine",
    "MachineConfig",
    "MachineConfigUpdate",
    "Metrics",
    "MmdsConfig",
    "MmdsVersion",
    "NetworkInterface",
    "PartialDrive",
    "PartialNetworkInterface",
    "PermanentError",
    "ProcessExitedError",
    "ProcessSupervisor",
    "RateLimiter",
    "Settings",
    "SpawnError",
    "StateTransition",
    "TokenBucket",
    "TransientError",
    "TransportError",
    "VmConfig",
    "VmState",
    "VmTimeoutError",
    "Vsock",
    "configure_logging",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("firepilot")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
