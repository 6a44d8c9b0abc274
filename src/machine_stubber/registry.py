"""Backend lookup by VM type."""

from typing import Any

from machine_stubber.applehv_stubber import AppleHVStubber
from machine_stubber.exceptions import VmConfigError
from machine_stubber.qemu_stubber import QEMUStubber
from machine_stubber.settings import Settings
from machine_stubber.stubber import VMStubber
from machine_stubber.vm_types import VMType

_BACKENDS: dict[VMType, type[VMStubber]] = {
    VMType.QEMU: QEMUStubber,
    VMType.APPLEHV: AppleHVStubber,
}


def get_stubber(vm_type: VMType | str, settings: Settings | None = None, **providers: Any) -> VMStubber:
    """Instantiate the stubber for vm_type.

    Args:
        vm_type: Backend identifier
        settings: Runtime settings (default: from environment)
        **providers: Forwarded to the stubber (ignition_provider, disk_provider,
            root_policy, executor_factory, initial_state)

    Raises:
        VmConfigError: Unknown backend, or one not available in this build
    """
    try:
        vm_type = VMType(vm_type)
    except ValueError as e:
        raise VmConfigError(f"unknown VM type: {vm_type}", context={"vm_type": str(vm_type)}) from e

    backend = _BACKENDS.get(vm_type)
    if backend is None:
        raise VmConfigError(
            f"VM type {vm_type.value} is not available",
            context={"vm_type": vm_type.value, "available": sorted(t.value for t in _BACKENDS)},
        )
    return backend(settings, **providers)
