"""Interfaces to the collaborators that live outside the stubbers.

First-boot configuration generation and disk image acquisition are owned
by the caller; the stubbers only consume their results.
"""

from pathlib import Path
from typing import Protocol

import aiofiles.os

from machine_stubber.exceptions import VmConfigError
from machine_stubber.models import MachineConfig, VMFile
from machine_stubber.vm_types import VMType


class FirstBootConfigProvider(Protocol):
    def config_handle(self, mc: MachineConfig) -> VMFile: ...


class DiskImageProvider(Protocol):
    async def fetch(self, user_input: str, mc: MachineConfig, vm_type: VMType) -> Path: ...


class IgnitionFileProvider:
    """Ignition file at its conventional location in the machine's config dir."""

    def config_handle(self, mc: MachineConfig) -> VMFile:
        return mc.ignition_file()


class LocalDiskImageProvider:
    """Use an image already present on the host."""

    async def fetch(self, user_input: str, mc: MachineConfig, vm_type: VMType) -> Path:
        path = Path(user_input).expanduser()
        if not await aiofiles.os.path.isfile(path):
            raise VmConfigError(
                f"disk image not found: {user_input}",
                context={"machine": mc.name, "vm_type": vm_type.value},
            )
        return path
