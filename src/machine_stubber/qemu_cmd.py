"""QEMU command line builder.

QemuCommand collects argument groups through setters and emits them in a
fixed order from build(), so the token sequence depends only on the
inputs, never on the order the setters were called in.

Emitted order:
    binary + arch options, boot drive, memory, cpus, ignition, QMP monitor,
    network device, ready serial port + pidfile, virtfs mounts,
    USB passthrough, display
"""

from pathlib import Path

from machine_stubber import constants
from machine_stubber._logging import get_logger
from machine_stubber.exceptions import CommandBuildError
from machine_stubber.models import CommandLine, MachineConfig, QMPMonitor, USBConfig, VMFile
from machine_stubber.platform_utils import HostArch, detect_host_arch

logger = get_logger(__name__)


def arch_options(arch: HostArch) -> list[str]:
    """Accelerator and CPU model arguments for the host architecture."""
    if arch == HostArch.AARCH64:
        return ["-accel", "kvm", "-cpu", "host", "-M", "virt,gic-version=max"]
    return ["-accel", "kvm", "-cpu", "host"]


class QemuCommand:
    """Declarative builder for a QEMU invocation."""

    def __init__(self, binary: str | Path, options: list[str] | None = None) -> None:
        self._head = [str(binary), *(options or [])]
        self._boot: list[str] = []
        self._memory: list[str] = []
        self._cpus: list[str] = []
        self._ignition: list[str] = []
        self._monitor: list[str] = []
        self._network: list[str] = []
        self._serial: list[str] = []
        self._mounts: list[list[str]] = []
        self._usb: list[str] = []
        self._display: list[str] = []

    def set_bootable_image(self, image: Path) -> None:
        self._boot = ["-drive", f"if=virtio,file={image}"]

    def set_memory(self, memory_mib: int) -> None:
        self._memory = ["-m", str(memory_mib)]

    def set_cpus(self, cpus: int) -> None:
        self._cpus = ["-smp", str(cpus)]

    def set_ignition_file(self, ignition: VMFile) -> None:
        self._ignition = ["-fw_cfg", f"name={constants.IGNITION_FW_CFG_NAME},file={ignition.get_path()}"]

    def set_qmp_monitor(self, monitor: QMPMonitor) -> None:
        self._monitor = ["-qmp", f"{monitor.network}:{monitor.address.get_path()},server=on,wait=off"]

    def set_network(self, gvproxy_socket: VMFile) -> None:
        self._network = [
            "-netdev",
            f"stream,id=vlan,server=off,addr.type=unix,addr.path={gvproxy_socket.get_path()}",
            "-device",
            f"virtio-net-pci,netdev=vlan,mac={constants.GUEST_MAC_ADDRESS}",
        ]

    def set_serial_port(self, ready_socket: VMFile, pid_file: VMFile, name: str) -> None:
        chardev_id = f"a{name}_ready"
        self._serial = [
            "-device",
            "virtio-serial",
            "-chardev",
            f"socket,path={ready_socket.get_path()},server=on,wait=off,id={chardev_id}",
            "-device",
            f"virtserialport,chardev={chardev_id},name={constants.READY_PORT_NAME}",
            "-pidfile",
            str(pid_file.get_path()),
        ]

    def add_virtfs_mount(self, source: str, tag: str, security_model: str, read_only: bool) -> None:
        option = f"local,path={source},mount_tag={tag},security_model={security_model}"
        if read_only:
            option += ",readonly"
        self._mounts.append(["-virtfs", option])

    def set_usb_host_passthrough(self, usbs: list[USBConfig]) -> None:
        if not usbs:
            self._usb = []
            return
        args = ["-device", "qemu-xhci"]
        for usb in usbs:
            if usb.bus and usb.dev_number:
                device = f"usb-host,hostbus={usb.bus},hostaddr={usb.dev_number}"
            else:
                device = f"usb-host,vendorid={usb.vendor_id},productid={usb.product_id}"
            args.extend(["-device", device])
        self._usb = args

    def set_display(self, display: str) -> None:
        self._display = ["-display", display]

    def build(self) -> CommandLine:
        """Assemble the final, immutable command line."""
        args = [*self._head, *self._boot, *self._memory, *self._cpus, *self._ignition, *self._monitor]
        args.extend(self._network)
        args.extend(self._serial)
        for mount in self._mounts:
            args.extend(mount)
        args.extend(self._usb)
        args.extend(self._display)
        return tuple(args)


def build_qemu_command(
    mc: MachineConfig,
    qemu_binary: str | Path,
    ignition: VMFile,
    *,
    debug: bool = False,
    arch: HostArch | None = None,
) -> CommandLine:
    """Build the QEMU invocation for a machine.

    Args:
        mc: Machine configuration (must have been through create_vm)
        qemu_binary: Resolved hypervisor executable
        ignition: First-boot configuration handle
        debug: Keep the display window; otherwise run headless
        arch: Override host architecture detection

    Raises:
        CommandBuildError: A referenced socket or file handle has no path
    """
    hypervisor = mc.qemu_hypervisor
    if hypervisor is None:
        raise CommandBuildError("machine has no QEMU configuration", {"machine": mc.name})
    if hypervisor.qemu_pid_path is None:
        raise CommandBuildError("machine has no QEMU pid file", {"machine": mc.name})

    cmd = QemuCommand(qemu_binary, arch_options(arch or detect_host_arch()))
    cmd.set_bootable_image(mc.image_path.get_path())
    cmd.set_memory(mc.resources.memory)
    cmd.set_cpus(mc.resources.cpus)
    cmd.set_ignition_file(ignition)
    cmd.set_qmp_monitor(hypervisor.qmp_monitor)
    cmd.set_network(mc.gvproxy_socket())
    cmd.set_serial_port(mc.ready_socket(), hypervisor.qemu_pid_path, mc.name)

    for mount in mc.mounts:
        cmd.add_virtfs_mount(mount.source, mount.tag, mount.security_model, mount.read_only)

    cmd.set_usb_host_passthrough(mc.resources.usbs)

    if not debug:
        cmd.set_display("none")

    cmdline = cmd.build()
    logger.debug("qemu cmd", extra={"machine": mc.name, "cmdline": list(cmdline)})
    return cmdline
