"""MicroVM lifecycle states and the transitions between them."""

from dataclasses import dataclass
from enum import Enum


class VmState(Enum):
    """Lifecycle phase of one microVM as seen by its Executor."""

    CREATED = "created"
    """Process spawned (or about to be); control socket not yet confirmed."""

    CONFIGURING = "configuring"
    """Control socket answers; pre-boot resources are being applied."""

    CONFIGURED = "configured"
    """Every resource of a VmConfig was accepted."""

    BOOTING = "booting"
    """InstanceStart sent, waiting for the hypervisor's answer."""

    RUNNING = "running"
    PAUSED = "paused"

    STOPPING = "stopping"
    """Shutdown requested or process being terminated."""

    TERMINATED = "terminated"
    """Process reaped.  Terminal: every later operation is rejected."""


# Forced termination (kill) may leave any state; it is recorded as abnormal.
VALID_STATE_TRANSITIONS: dict[VmState, set[VmState]] = {
    VmState.CREATED: {VmState.CONFIGURING, VmState.TERMINATED},
    VmState.CONFIGURING: {VmState.CONFIGURED, VmState.TERMINATED},
    VmState.CONFIGURED: {VmState.BOOTING, VmState.TERMINATED},
    VmState.BOOTING: {VmState.RUNNING, VmState.TERMINATED},
    VmState.RUNNING: {VmState.PAUSED, VmState.STOPPING, VmState.TERMINATED},
    VmState.PAUSED: {VmState.RUNNING, VmState.STOPPING, VmState.TERMINATED},
    VmState.STOPPING: {VmState.TERMINATED},
    VmState.TERMINATED: set(),
}


@dataclass(frozen=True)
class StateTransition:
    """One state change performed by an Executor.

    Attributes:
        old: State before the change
        new: State after the change
        operation: Executor operation that caused it (e.g. "start", "kill")
        abnormal: True when the change skipped the normal path (forced kill,
            failed start)
    """

    old: VmState
    new: VmState
    operation: str
    abnormal: bool = False
