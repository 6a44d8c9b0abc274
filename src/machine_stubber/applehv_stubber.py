"""AppleHV backend, driving Apple's Virtualization.framework through vfkit.

vfkit has no pidfile flag and no monitor socket: the supervisor records
the pid and shutdown is done with signals.
"""

from __future__ import annotations

from pathlib import Path

from machine_stubber._logging import debug_enabled, get_logger
from machine_stubber.disk import resize_raw
from machine_stubber.exceptions import MonitorError, StubberError
from machine_stubber.models import AppleHVConfig, CommandLine, CreateVMOpts, MachineConfig, MountType, VMFile
from machine_stubber.network import GvproxyCommand, prepare_proxy
from machine_stubber.resource_cleanup import cleanup_pid
from machine_stubber.stubber import VMStubber
from machine_stubber.vfkit_cmd import build_vfkit_command
from machine_stubber.vm_types import VMState, VMType

logger = get_logger(__name__)


class AppleHVStubber(VMStubber):
    proxy_datagram = True

    @property
    def vm_type(self) -> VMType:
        return VMType.APPLEHV

    @property
    def binary_name(self) -> str:
        return self.settings.vfkit_binary

    def mount_type(self) -> MountType:
        return MountType.VIRTIOFS

    def _pid_file(self, mc: MachineConfig) -> VMFile | None:
        if mc.apple_hypervisor is None:
            return None
        return mc.apple_hypervisor.pid_path

    def _supervisor_pid_file(self, mc: MachineConfig) -> Path | None:
        pid_file = self._pid_file(mc)
        return pid_file.get_path() if pid_file is not None else None

    def _build_command(self, mc: MachineConfig, binary: Path, ignition: VMFile) -> CommandLine:
        return build_vfkit_command(mc, binary, ignition, debug=debug_enabled())

    async def _resize_disk(self, new_size_gib: int, disk: VMFile) -> None:
        await resize_raw(new_size_gib, disk)

    async def create_vm(self, opts: CreateVMOpts, mc: MachineConfig) -> None:
        self.check_transition(VMState.CREATED)
        try:
            mc.apple_hypervisor = AppleHVConfig(
                efi_variable_store=VMFile(path=mc.config_dir / f"{opts.name}-efi-store"),
                log_file=VMFile(path=opts.runtime_dir / f"{opts.name}.log"),
                pid_path=VMFile(path=opts.runtime_dir / f"{opts.name}_vfkit.pid"),
            )
            await self._resize_disk(mc.resources.disk_size, mc.image_path)
        except StubberError:
            await self.transition_state(VMState.FAILED)
            raise
        await self.transition_state(VMState.CREATED)

    async def start_networking(self, mc: MachineConfig, cmd: GvproxyCommand) -> None:
        await prepare_proxy(mc, cmd, scheme="unixgram")

    async def stop_vm(self, mc: MachineConfig, *, hard_stop: bool = False) -> None:
        """Stop vfkit with SIGTERM (guest shutdown request), then SIGKILL.

        Raises:
            InvalidStateTransitionError: VM is neither Running nor Failed
            MonitorError: vfkit survived SIGKILL
        """
        if self.state != VMState.FAILED:
            await self.transition_state(VMState.STOPPING)

        pid = await self._current_pid(mc)
        term_timeout = 0.0 if hard_stop else self.settings.stop_timeout
        if pid is not None and not await cleanup_pid(pid, "vfkit", term_timeout=term_timeout):
            if self.state != VMState.FAILED:
                await self.transition_state(VMState.FAILED)
            raise MonitorError("unable to stop vfkit", context={"machine": mc.name, "pid": pid})

        await self._clean_after_stop(mc)
        await self.transition_state(VMState.STOPPED)
        logger.info("VM stopped", extra={"machine": mc.name, "pid": pid})
