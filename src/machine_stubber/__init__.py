"""machine-stubber: lifecycle backends for locally hosted container VMs.

Creates the backing disk, assembles the hypervisor invocation, launches and
supervises the hypervisor, coordinates the gvproxy user-mode network and
waits for the guest's boot-completion signal. QEMU and AppleHV (vfkit)
backends share one lifecycle contract.

Quick Start:
    ```python
    from machine_stubber import CreateVMOpts, GvproxyCommand, VMType, get_stubber, gvproxy_cmdline

    stubber = get_stubber(VMType.QEMU)
    await stubber.create_vm(CreateVMOpts(name=mc.name, runtime_dir=mc.runtime_dir), mc)

    gvproxy = GvproxyCommand()
    await stubber.start_networking(mc, gvproxy)
    # ... start gvproxy with gvproxy_cmdline(gvproxy, stubber.settings) ...

    handle = await stubber.start_vm(mc)
    handle.release()
    await handle.await_ready()
    await stubber.mount_volumes_to_vm(mc)
    ```

Requirements:
    - qemu-system-* and qemu-img (QEMU), or vfkit (macOS)
    - gvproxy
    - Python 3.12+
"""

from machine_stubber.exceptions import (
    BinaryNotFoundError,
    CommandBuildError,
    DiskResizeError,
    GuestReadError,
    InvalidStateTransitionError,
    MonitorError,
    NetworkProxyUnavailableError,
    PermanentError,
    ProcessDiedError,
    ProcessLaunchError,
    ReadinessTimeoutError,
    RemoteCommandError,
    SocketWaitTimeoutError,
    StubberError,
    TransientError,
    UnsupportedMountTypeError,
    VmConfigError,
)
from machine_stubber.models import (
    BackoffPolicy,
    CreateVMOpts,
    MachineConfig,
    MountSpec,
    MountType,
    ResourceConfig,
    SetOptions,
    VMFile,
)
from machine_stubber.network import GvproxyCommand, gvproxy_cmdline
from machine_stubber.registry import get_stubber
from machine_stubber.settings import Settings
from machine_stubber.stubber import StartHandle, VMStubber
from machine_stubber.vm_types import VMState, VMType

__all__ = [
    "BackoffPolicy",
    "BinaryNotFoundError",
    "CommandBuildError",
    "CreateVMOpts",
    "DiskResizeError",
    "GuestReadError",
    "GvproxyCommand",
    "InvalidStateTransitionError",
    "MachineConfig",
    "MonitorError",
    "MountSpec",
    "MountType",
    "NetworkProxyUnavailableError",
    "PermanentError",
    "ProcessDiedError",
    "ProcessLaunchError",
    "ReadinessTimeoutError",
    "RemoteCommandError",
    "ResourceConfig",
    "SetOptions",
    "Settings",
    "SocketWaitTimeoutError",
    "StartHandle",
    "StubberError",
    "TransientError",
    "UnsupportedMountTypeError",
    "VMFile",
    "VMState",
    "VMStubber",
    "VMType",
    "VmConfigError",
    "get_stubber",
    "gvproxy_cmdline",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("machine-stubber")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
