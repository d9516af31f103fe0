"""Configuration model for the Firecracker control plane.

Every resource the hypervisor accepts is a frozen pydantic model whose
field names and enum literals match the Firecracker API schema, so
``to_api()`` output goes onto the wire unchanged.  Optional fields that
are unset are omitted from the payload rather than sent as ``null``.

Validation failures are raised as ConfigValidationError, never as
pydantic's own ValidationError, so callers handle one error family.
Host paths are not checked for existence here.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping
from enum import Enum
from ipaddress import IPv4Address
from pathlib import Path
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from firepilot import constants
from firepilot.exceptions import ConfigValidationError

# ============================================================================
# Enums (wire literals)
# ============================================================================


class CacheType(str, Enum):
    """Block device caching strategy."""

    UNSAFE = "Unsafe"
    WRITEBACK = "Writeback"


class IoEngine(str, Enum):
    """Block device I/O engine."""

    SYNC = "Sync"
    ASYNC = "Async"


class CpuTemplate(str, Enum):
    """Static CPU templates understood by the hypervisor."""

    C3 = "C3"
    T2 = "T2"
    T2S = "T2S"
    T2CL = "T2CL"
    T2A = "T2A"
    V1N1 = "V1N1"
    NONE = "None"


class HugePages(str, Enum):
    """Guest memory backing page size."""

    NONE = "None"
    HUGE_2M = "2M"


class LogLevel(str, Enum):
    """Hypervisor log verbosity."""

    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"
    DEBUG = "Debug"
    TRACE = "Trace"
    OFF = "Off"


class MmdsVersion(str, Enum):
    """MMDS protocol version (V2 requires session tokens)."""

    V1 = "V1"
    V2 = "V2"


class ActionType(str, Enum):
    """Synchronous actions accepted on /actions."""

    INSTANCE_START = "InstanceStart"
    SEND_CTRL_ALT_DEL = "SendCtrlAltDel"
    FLUSH_METRICS = "FlushMetrics"


class VmStateRequest(str, Enum):
    """Target state for PATCH /vm."""

    PAUSED = "Paused"
    RESUMED = "Resumed"


# ============================================================================
# Base Models
# ============================================================================


class _ApiModelMeta(type(BaseModel)):  # type: ignore[misc]
    """Converts validation errors raised by direct construction.

    Nested models are built by pydantic-core without going through
    ``__call__``, so their errors reach the outermost model with the full
    location (e.g. ``drives.1.drive_id``).
    """

    def __call__(cls, *args: Any, **kwargs: Any) -> Any:
        try:
            return super().__call__(*args, **kwargs)
        except PydanticValidationError as e:
            raise _config_error(cls.__name__, e) from e


class ApiModel(BaseModel, metaclass=_ApiModelMeta):
    """Base for request bodies sent to the hypervisor."""

    model_config = ConfigDict(
        frozen=True,  # Submitted configuration must not change under the executor
        extra="forbid",
        populate_by_name=True,
    )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        """Validate a plain mapping (e.g. parsed JSON) into a model.

        Raises:
            ConfigValidationError: Mapping does not satisfy the schema.
        """
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise _config_error(cls.__name__, e) from e

    def to_api(self) -> dict[str, Any]:
        """Serialize to the hypervisor's JSON wire shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ApiResponse(BaseModel):
    """Base for bodies returned by the hypervisor.

    Unknown fields are ignored so newer hypervisor versions stay readable.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")


def _config_error(model_name: str, error: PydanticValidationError) -> ConfigValidationError:
    errors = error.errors(include_url=False, include_context=False)
    details = "; ".join(f"{'.'.join(str(p) for p in err['loc']) or model_name}: {err['msg']}" for err in errors)
    return ConfigValidationError(
        f"Invalid {model_name}: {details}",
        context={"model": model_name, "errors": errors},
    )


# ============================================================================
# Rate Limiting
# ============================================================================


class TokenBucket(ApiModel):
    """Token bucket with a one-time burst allowance.

    ``size`` tokens are refilled every ``refill_time_ms`` milliseconds
    (serialized as ``refill_time``).  Units are bytes for a bandwidth
    bucket and operations for an ops bucket.
    """

    size: int = Field(gt=0, description="Bucket capacity")
    one_time_burst: int | None = Field(default=None, ge=0, description="Initial burst on top of size")
    refill_time_ms: int = Field(gt=0, alias="refill_time", description="Refill interval in milliseconds")

    @model_validator(mode="after")
    def _burst_within_size(self) -> Self:
        if self.one_time_burst is not None and self.one_time_burst > self.size:
            raise ValueError(f"one_time_burst ({self.one_time_burst}) must not exceed size ({self.size})")
        return self


class RateLimiter(ApiModel):
    """Bandwidth and/or operations limits for a device."""

    bandwidth: TokenBucket | None = None
    ops: TokenBucket | None = None


# ============================================================================
# Pre-boot Resources
# ============================================================================


class BootSource(ApiModel):
    """Guest kernel, optional initrd, and kernel command line."""

    kernel_image_path: Path
    boot_args: str | None = None
    initrd_path: Path | None = None


class Drive(ApiModel):
    """Block device backed by a host file."""

    drive_id: str = Field(min_length=1, pattern=constants.RESOURCE_ID_PATTERN)
    path_on_host: Path
    is_root_device: bool = False
    is_read_only: bool = False
    partuuid: str | None = None
    cache_type: CacheType | None = None
    io_engine: IoEngine | None = None
    rate_limiter: RateLimiter | None = None


class NetworkInterface(ApiModel):
    """virtio-net device backed by a host TAP device."""

    iface_id: str = Field(min_length=1, pattern=constants.RESOURCE_ID_PATTERN)
    host_dev_name: str = Field(min_length=1)
    guest_mac: str | None = Field(default=None, pattern=constants.MAC_ADDRESS_PATTERN)
    rx_rate_limiter: RateLimiter | None = None
    tx_rate_limiter: RateLimiter | None = None


class MachineConfig(ApiModel):
    """vCPU count, memory size and CPU features.

    Locked once the instance has started.
    """

    vcpu_count: int = Field(ge=1, le=constants.MAX_VCPU_COUNT)
    mem_size_mib: int = Field(ge=1)
    smt: bool = False
    track_dirty_pages: bool = False
    cpu_template: CpuTemplate | None = None
    huge_pages: HugePages | None = None

    @model_validator(mode="after")
    def _smt_needs_even_vcpus(self) -> Self:
        if self.smt and self.vcpu_count > 1 and self.vcpu_count % 2:
            raise ValueError(f"vcpu_count must be 1 or even when smt is enabled, got {self.vcpu_count}")
        return self


class Logger(ApiModel):
    """Hypervisor log destination (a file or named pipe the caller created)."""

    log_path: Path
    level: LogLevel | None = None
    show_level: bool | None = None
    show_log_origin: bool | None = None
    module: str | None = None


class Metrics(ApiModel):
    """Hypervisor metrics destination (a file or named pipe the caller created)."""

    metrics_path: Path


class MmdsConfig(ApiModel):
    """Which interfaces can reach the metadata service, and how."""

    version: MmdsVersion | None = None
    network_interfaces: list[str] = Field(min_length=1)
    ipv4_address: IPv4Address | None = None


class Vsock(ApiModel):
    """virtio-vsock device exposed on the host as a Unix socket."""

    guest_cid: int = Field(ge=constants.MIN_GUEST_CID)
    uds_path: Path
    vsock_id: str | None = None


class Balloon(ApiModel):
    """Memory balloon device."""

    amount_mib: int = Field(ge=0)
    deflate_on_oom: bool = False
    stats_polling_interval_s: int | None = Field(default=None, ge=0)


# ============================================================================
# Runtime Updates and Actions
# ============================================================================


class PartialDrive(ApiModel):
    """Post-boot drive update: swap backing file and/or rate limiter."""

    drive_id: str = Field(min_length=1, pattern=constants.RESOURCE_ID_PATTERN)
    path_on_host: Path | None = None
    rate_limiter: RateLimiter | None = None


class PartialNetworkInterface(ApiModel):
    """Post-boot interface update: adjust rate limiters."""

    iface_id: str = Field(min_length=1, pattern=constants.RESOURCE_ID_PATTERN)
    rx_rate_limiter: RateLimiter | None = None
    tx_rate_limiter: RateLimiter | None = None


class MachineConfigUpdate(ApiModel):
    """Pre-boot partial machine config update."""

    vcpu_count: int | None = Field(default=None, ge=1, le=constants.MAX_VCPU_COUNT)
    mem_size_mib: int | None = Field(default=None, ge=1)
    smt: bool | None = None
    track_dirty_pages: bool | None = None
    cpu_template: CpuTemplate | None = None


class BalloonUpdate(ApiModel):
    """New balloon target size."""

    amount_mib: int = Field(ge=0)


class BalloonStatsUpdate(ApiModel):
    """New balloon statistics polling interval (0 disables)."""

    stats_polling_interval_s: int = Field(ge=0)


class InstanceActionInfo(ApiModel):
    """Body of PUT /actions."""

    action_type: ActionType


class VmStateUpdate(ApiModel):
    """Body of PATCH /vm."""

    state: VmStateRequest


# ============================================================================
# Responses
# ============================================================================


class InstanceInfo(ApiResponse):
    """Body of GET /."""

    id: str
    state: str = Field(description='"Not started", "Running" or "Paused"')
    vmm_version: str
    app_name: str | None = None


class VmmVersion(ApiResponse):
    """Body of GET /version."""

    firecracker_version: str


class BalloonStats(ApiResponse):
    """Body of GET /balloon/statistics (memory counters in bytes)."""

    target_pages: int
    actual_pages: int
    target_mib: int
    actual_mib: int
    free_memory: int | None = None
    available_memory: int | None = None
    total_memory: int | None = None


# ============================================================================
# Aggregate
# ============================================================================


class VmConfig(ApiModel):
    """Complete configuration snapshot for one microVM.

    The executor applies it in a fixed order independent of field order
    here.  Cross-resource rules checked at construction:

    - at most one drive is the root device
    - drive ids are unique
    - interface ids are unique
    - MMDS only names interfaces defined in this config
    """

    boot_source: BootSource
    drives: list[Drive] = Field(default_factory=list)
    network_interfaces: list[NetworkInterface] = Field(default_factory=list)
    machine_config: MachineConfig | None = None
    logger: Logger | None = None
    metrics: Metrics | None = None
    mmds_config: MmdsConfig | None = None
    mmds_data: dict[str, Any] | None = None
    vsock: Vsock | None = None
    balloon: Balloon | None = None

    @model_validator(mode="after")
    def _check_cross_references(self) -> Self:
        roots = [d.drive_id for d in self.drives if d.is_root_device]
        if len(roots) > 1:
            raise ValueError(f"at most one drive may be the root device, got {len(roots)}: {', '.join(roots)}")

        duplicate_drives = sorted(k for k, n in Counter(d.drive_id for d in self.drives).items() if n > 1)
        if duplicate_drives:
            raise ValueError(f"duplicate drive_id: {', '.join(duplicate_drives)}")

        iface_ids = Counter(i.iface_id for i in self.network_interfaces)
        duplicate_ifaces = sorted(k for k, n in iface_ids.items() if n > 1)
        if duplicate_ifaces:
            raise ValueError(f"duplicate iface_id: {', '.join(duplicate_ifaces)}")

        if self.mmds_config is not None:
            unknown = [i for i in self.mmds_config.network_interfaces if i not in iface_ids]
            if unknown:
                raise ValueError(f"mmds_config references undefined network interfaces: {', '.join(unknown)}")
        return self

    @property
    def root_drive(self) -> Drive | None:
        """The drive mounted as the guest root filesystem, if any."""
        return next((d for d in self.drives if d.is_root_device), None)

    def to_config_file(self) -> dict[str, Any]:
        """Render the document accepted by ``firecracker --config-file``.

        MMDS contents are not part of the file format and are left out.
        """
        document: dict[str, Any] = {
            "boot-source": self.boot_source.to_api(),
            "drives": [d.to_api() for d in self.drives],
            "network-interfaces": [i.to_api() for i in self.network_interfaces],
        }
        optional: dict[str, ApiModel | None] = {
            "machine-config": self.machine_config,
            "logger": self.logger,
            "metrics": self.metrics,
            "mmds-config": self.mmds_config,
            "vsock": self.vsock,
            "balloon": self.balloon,
        }
        for key, section in optional.items():
            if section is not None:
                document[key] = section.to_api()
        return document
