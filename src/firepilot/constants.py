"""Constants for firepilot configuration and the Firecracker API."""

from typing import Final

# ============================================================================
# Binary Discovery and Workspace
# ============================================================================

FIRECRACKER_BINARY_NAME: Final[str] = "firecracker"
"""File name searched for in $PATH and the current directory."""

FIRECRACKER_LOCATION_ENV: Final[str] = "FIRECRACKER_LOCATION"
"""Environment variable holding a direct path to the firecracker binary."""

DEFAULT_WORKSPACE_DIR: Final[str] = "/tmp/firecracker"
"""Parent directory of per-VM workspaces (one subdirectory per vm_id)."""

SOCKET_FILE_NAME: Final[str] = "firecracker.socket"
"""Control socket file name inside a VM workspace."""

# ============================================================================
# Timeouts
# ============================================================================

READY_TIMEOUT_SECONDS: Final[float] = 5.0
"""Time allowed for the control socket to accept connections after spawn."""

READY_POLL_INTERVAL_SECONDS: Final[float] = 0.005
"""Interval between socket-existence checks while waiting for readiness."""

REQUEST_TIMEOUT_SECONDS: Final[float] = 10.0
"""Per-request timeout on the control socket.
Configuration PUTs answer in milliseconds; InstanceStart includes guest
memory setup and can take a few seconds on large VMs."""

TERM_TIMEOUT_SECONDS: Final[float] = 3.0
"""Grace period after SIGTERM before SIGKILL."""

KILL_TIMEOUT_SECONDS: Final[float] = 2.0
"""Time allowed after SIGKILL for the process to be reaped."""

SHUTDOWN_TIMEOUT_SECONDS: Final[float] = 10.0
"""Time allowed for the guest to power off after SendCtrlAltDel."""

# ============================================================================
# Process Output
# ============================================================================

OUTPUT_RING_LINES: Final[int] = 200
"""Hypervisor stdout/stderr lines kept in memory for crash diagnostics."""

OUTPUT_TAIL_LINES: Final[int] = 20
"""Lines attached to ProcessExitedError."""

OUTPUT_READ_CHUNK_BYTES: Final[int] = 4096
"""Bytes read from a stdout/stderr pipe per call."""

OUTPUT_MAX_LINE_BYTES: Final[int] = 64 * 1024
"""Longer output lines are split into pieces of at most this size."""

# ============================================================================
# Control-Plane API
# ============================================================================

API_BASE_URL: Final[str] = "http://localhost"
"""Host part is ignored over a Unix socket but httpx needs an absolute URL."""

PATH_INSTANCE_INFO: Final[str] = "/"
PATH_VERSION: Final[str] = "/version"
PATH_ACTIONS: Final[str] = "/actions"
PATH_BOOT_SOURCE: Final[str] = "/boot-source"
PATH_MACHINE_CONFIG: Final[str] = "/machine-config"
PATH_LOGGER: Final[str] = "/logger"
PATH_METRICS: Final[str] = "/metrics"
PATH_DRIVES: Final[str] = "/drives"
PATH_NETWORK_INTERFACES: Final[str] = "/network-interfaces"
PATH_MMDS: Final[str] = "/mmds"
PATH_MMDS_CONFIG: Final[str] = "/mmds/config"
PATH_VSOCK: Final[str] = "/vsock"
PATH_BALLOON: Final[str] = "/balloon"
PATH_BALLOON_STATS: Final[str] = "/balloon/statistics"
PATH_VM: Final[str] = "/vm"

# ============================================================================
# Configuration Limits
# ============================================================================

MAX_VCPU_COUNT: Final[int] = 32
"""Firecracker's upper bound on vCPUs per microVM."""

MIN_GUEST_CID: Final[int] = 3
"""CIDs 0-2 are reserved by the vsock specification."""

RESOURCE_ID_PATTERN: Final[str] = r"^[A-Za-z0-9_]+$"
"""Drive and interface ids: ASCII alphanumerics and underscore."""

MAC_ADDRESS_PATTERN: Final[str] = r"^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$"

VM_ID_PATTERN: Final[str] = r"^[A-Za-z0-9-]{1,64}$"
"""Instance ids accepted by ``firecracker --id``."""

OUTPUT_DRAIN_GRACE_SECONDS: Final[float] = 0.5
"""Time allowed after exit for buffered output to be read before the drain task is cancelled."""
