"""Data models for machine-stubber.

MachineConfig is owned by the caller (loaded and persisted elsewhere); the
stubbers only mutate its hypervisor sub-config and resource fields in place.
"""

from __future__ import annotations

import contextlib
from enum import Enum
from pathlib import Path

import aiofiles.os
from pydantic import BaseModel, ConfigDict, Field

from machine_stubber import constants
from machine_stubber.exceptions import CommandBuildError, VmConfigError


CommandLine = tuple[str, ...]
"""Assembled hypervisor invocation: executable followed by its arguments."""


class MountType(str, Enum):
    """Directory-sharing mechanisms known to the backends."""

    NINEP = "9p"
    VIRTIOFS = "virtiofs"
    NONE = "none"


class BackoffPolicy(BaseModel):
    """Bounded retry schedule for socket polling: attempt count + fixed delay."""

    model_config = ConfigDict(frozen=True)

    attempts: int = Field(gt=0, description="Maximum connect attempts")
    delay: float = Field(gt=0, description="Seconds slept between failed attempts")


class VMFile(BaseModel):
    """Handle to a file-system artifact (socket, pid file, disk image)."""

    model_config = ConfigDict(frozen=True)

    path: Path | None = None

    def get_path(self) -> Path:
        """Resolved path.

        Raises:
            CommandBuildError: Handle was never bound to a path
        """
        if self.path is None or not str(self.path):
            raise CommandBuildError("VM file handle has no path")
        return self.path

    async def delete(self) -> None:
        """Remove the artifact. A missing file is not an error."""
        if self.path is None:
            return
        with contextlib.suppress(FileNotFoundError):
            await aiofiles.os.remove(self.path)


class USBConfig(BaseModel):
    """One USB host device to pass through, by bus address or by vendor/product id."""

    bus: str = ""
    dev_number: str = ""
    vendor_id: int = 0
    product_id: int = 0


def parse_usbs(usbs: list[str]) -> list[USBConfig]:
    """Parse USB passthrough specs.

    Accepted forms: ``bus=<bus>,devnum=<dev>`` and ``vendor=<hex>,product=<hex>``.
    Empty entries are skipped.

    Raises:
        VmConfigError: Entry is in neither form
    """
    configs: list[USBConfig] = []
    for spec in usbs:
        if not spec:
            continue
        vals = spec.split(",")
        if len(vals) != 2:
            raise VmConfigError(f"usb: fail to parse: missing ',': {spec}", {"usb": spec})
        left = vals[0].split("=")
        right = vals[1].split("=")
        if len(left) != 2 or len(right) != 2:
            raise VmConfigError(f"usb: fail to parse: missing '=': {spec}", {"usb": spec})

        if left[0] == "bus" and right[0] == "devnum":
            configs.append(USBConfig(bus=left[1], dev_number=right[1]))
        elif left[0] == "vendor" and right[0] == "product":
            try:
                vendor_id = int(left[1], 16)
                product_id = int(right[1], 16)
            except ValueError as e:
                raise VmConfigError(f"usb: fail to parse hex id: {spec}", {"usb": spec}) from e
            configs.append(USBConfig(vendor_id=vendor_id, product_id=product_id))
        else:
            raise VmConfigError(f"usb: fail to parse: {spec}", {"usb": spec})
    return configs


def split_volume(idx: int, volume: str) -> tuple[str, str, str, bool, str]:
    """Split a ``source[:target[:options]]`` volume into its parts.

    Options are comma separated; ``ro`` marks the mount read-only and
    ``security_model=<mode>`` overrides the 9p security model.

    Returns:
        (source, target, tag, read_only, security_model)
    """
    parts = volume.split(":")
    source = parts[0]
    target = parts[1] if len(parts) > 1 and parts[1] else source
    read_only = False
    security_model = constants.DEFAULT_SECURITY_MODEL
    if len(parts) > 2:
        for option in parts[2].split(","):
            if option == "ro":
                read_only = True
            elif option.startswith("security_model="):
                security_model = option.split("=", 1)[1]
    return source, target, f"vol{idx}", read_only, security_model


class MountSpec(BaseModel):
    """One shared directory between host and guest.

    ``type`` is kept as a plain string so configurations naming a mechanism
    this build does not know still load; the mount pass rejects them.
    """

    source: str
    target: str
    tag: str
    read_only: bool = False
    type: str = MountType.NINEP.value
    original_input: str = ""

    @property
    def security_model(self) -> str:
        if not self.original_input:
            return constants.DEFAULT_SECURITY_MODEL
        return split_volume(0, self.original_input)[4]


class ResourceConfig(BaseModel):
    cpus: int = Field(default=2, ge=1)
    memory: int = Field(default=2048, ge=1, description="Guest memory in MiB")
    disk_size: int = Field(default=100, ge=1, description="Disk size in GiB")
    usbs: list[USBConfig] = Field(default_factory=list)


class SSHConfig(BaseModel):
    identity_path: Path = Path()
    port: int = 22
    remote_username: str = "core"


class HostUser(BaseModel):
    rootful: bool = False
    uid: int = 0
    modified: bool = False


class QMPMonitor(BaseModel):
    """QEMU monitor protocol endpoint."""

    network: str = "unix"
    address: VMFile
    timeout: float = constants.QMP_MONITOR_TIMEOUT_SECONDS

    @classmethod
    def for_machine(cls, name: str, runtime_dir: Path) -> QMPMonitor:
        if not name:
            raise VmConfigError("machine name required for QMP monitor")
        return cls(address=VMFile(path=runtime_dir / f"qmp_{name}.sock"))


class QEMUConfig(BaseModel):
    """QEMU-specific state embedded in MachineConfig."""

    qmp_monitor: QMPMonitor
    qemu_pid_path: VMFile | None = None


class AppleHVConfig(BaseModel):
    """AppleHV (vfkit) specific state embedded in MachineConfig."""

    efi_variable_store: VMFile
    log_file: VMFile
    pid_path: VMFile


class MachineConfig(BaseModel):
    """Everything the stubbers need to know about one VM."""

    name: str
    image_path: VMFile = Field(default_factory=VMFile)
    resources: ResourceConfig = Field(default_factory=ResourceConfig)
    mounts: list[MountSpec] = Field(default_factory=list)
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    host_user: HostUser = Field(default_factory=HostUser)
    runtime_dir: Path
    config_dir: Path
    qemu_hypervisor: QEMUConfig | None = None
    apple_hypervisor: AppleHVConfig | None = None

    def ready_socket(self) -> VMFile:
        """Socket the guest signals on once it has booted."""
        return VMFile(path=self.runtime_dir / f"{self.name}.sock")

    def gvproxy_socket(self) -> VMFile:
        """Socket the network proxy and the hypervisor NIC meet on."""
        return VMFile(path=self.runtime_dir / f"{self.name}-gvproxy.sock")

    def ignition_file(self) -> VMFile:
        return VMFile(path=self.config_dir / f"{self.name}.ign")

    def set_rootful(self, rootful: bool) -> None:
        self.host_user.rootful = rootful
        self.host_user.modified = True


class SetOptions(BaseModel):
    """Attribute changes requested for a stopped VM; None leaves a field alone."""

    disk_size: int | None = Field(default=None, ge=1)
    rootful: bool | None = None
    usbs: list[str] | None = None


class CreateVMOpts(BaseModel):
    name: str
    runtime_dir: Path
