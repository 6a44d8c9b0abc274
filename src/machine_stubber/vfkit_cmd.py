"""vfkit (Apple Virtualization.framework) command line builder.

Same construction contract as QemuCommand: setters collect groups, build()
emits them in a fixed order.
"""

from pathlib import Path

from machine_stubber import constants
from machine_stubber._logging import get_logger
from machine_stubber.exceptions import CommandBuildError
from machine_stubber.models import CommandLine, MachineConfig, VMFile

logger = get_logger(__name__)


class VfkitCommand:
    """Declarative builder for a vfkit invocation."""

    def __init__(self, binary: str | Path) -> None:
        self._binary = str(binary)
        self._resources: list[str] = []
        self._bootloader: list[str] = []
        self._ignition: list[str] = []
        self._disk: list[str] = []
        self._serial: list[str] = []
        self._ready: list[str] = []
        self._network: list[str] = []
        self._mounts: list[list[str]] = []
        self._gui: list[str] = []

    def set_resources(self, cpus: int, memory_mib: int) -> None:
        self._resources = ["--cpus", str(cpus), "--memory", str(memory_mib)]

    def set_efi_bootloader(self, variable_store: VMFile) -> None:
        self._bootloader = ["--bootloader", f"efi,variable-store={variable_store.get_path()},create"]

    def set_ignition_file(self, ignition: VMFile) -> None:
        self._ignition = ["--ignition", str(ignition.get_path())]

    def set_bootable_image(self, image: Path) -> None:
        self._disk = ["--device", f"virtio-blk,path={image}"]

    def set_serial_log(self, log_file: VMFile) -> None:
        self._serial = ["--device", f"virtio-serial,logFilePath={log_file.get_path()}"]

    def set_ready_socket(self, ready_socket: VMFile) -> None:
        # listen: vfkit owns the host socket and forwards connections to the guest port
        self._ready = [
            "--device",
            f"virtio-vsock,port={constants.READY_VSOCK_PORT},socketURL={ready_socket.get_path()},listen",
        ]

    def set_network(self, gvproxy_socket: VMFile) -> None:
        self._network = [
            "--device",
            f"virtio-net,unixSocketPath={gvproxy_socket.get_path()},mac={constants.GUEST_MAC_ADDRESS}",
        ]

    def add_virtiofs_mount(self, source: str, tag: str) -> None:
        self._mounts.append(["--device", f"virtio-fs,sharedDir={source},mountTag={tag}"])

    def enable_gui(self) -> None:
        self._gui = ["--device", "virtio-gpu,width=800,height=600", "--device", "virtio-input,pointing", "--gui"]

    def build(self) -> CommandLine:
        args = [self._binary, *self._resources, *self._bootloader, *self._ignition, *self._disk]
        args.extend(self._serial)
        args.extend(self._ready)
        args.extend(self._network)
        for mount in self._mounts:
            args.extend(mount)
        args.extend(["--device", "virtio-rng"])
        args.extend(self._gui)
        return tuple(args)


def build_vfkit_command(
    mc: MachineConfig,
    vfkit_binary: str | Path,
    ignition: VMFile,
    *,
    debug: bool = False,
) -> CommandLine:
    """Build the vfkit invocation for a machine.

    Raises:
        CommandBuildError: Machine was never created for AppleHV, or a handle has no path
    """
    hypervisor = mc.apple_hypervisor
    if hypervisor is None:
        raise CommandBuildError("machine has no AppleHV configuration", {"machine": mc.name})

    cmd = VfkitCommand(vfkit_binary)
    cmd.set_resources(mc.resources.cpus, mc.resources.memory)
    cmd.set_efi_bootloader(hypervisor.efi_variable_store)
    cmd.set_ignition_file(ignition)
    cmd.set_bootable_image(mc.image_path.get_path())
    cmd.set_serial_log(hypervisor.log_file)
    cmd.set_ready_socket(mc.ready_socket())
    cmd.set_network(mc.gvproxy_socket())
    for mount in mc.mounts:
        cmd.add_virtiofs_mount(mount.source, mount.tag)
    if debug:
        cmd.enable_gui()

    cmdline = cmd.build()
    logger.debug("vfkit cmd", extra={"machine": mc.name, "cmdline": list(cmdline)})
    return cmdline
