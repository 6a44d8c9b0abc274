"""VM lifecycle states, transition table and backend identifiers."""

from enum import Enum


class VMType(str, Enum):
    """Hypervisor backends behind the stubber contract."""

    QEMU = "qemu"
    APPLEHV = "applehv"
    HYPERV = "hyperv"
    WSL = "wsl"


class VMState(str, Enum):
    """Lifecycle state of one supervised VM."""

    UNINITIALIZED = "uninitialized"
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


VALID_STATE_TRANSITIONS: dict[VMState, set[VMState]] = {
    VMState.UNINITIALIZED: {VMState.CREATED, VMState.FAILED},
    VMState.CREATED: {VMState.STARTING, VMState.FAILED},
    VMState.STARTING: {VMState.RUNNING, VMState.FAILED},
    # RUNNING -> STOPPED covers a hypervisor that exited on its own (seen on refresh)
    VMState.RUNNING: {VMState.STOPPING, VMState.STOPPED, VMState.FAILED},
    VMState.STOPPING: {VMState.STOPPED, VMState.FAILED},
    VMState.STOPPED: {VMState.STARTING, VMState.FAILED},
    VMState.FAILED: {VMState.STARTING, VMState.STOPPED},
}
"""Allowed state edges. Anything not listed raises InvalidStateTransitionError."""
