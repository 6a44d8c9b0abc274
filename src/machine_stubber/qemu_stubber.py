"""QEMU backend."""

from __future__ import annotations

from pathlib import Path

from machine_stubber._logging import debug_enabled, get_logger
from machine_stubber.disk import resize_qcow2
from machine_stubber.exceptions import MonitorError, StubberError
from machine_stubber.models import CommandLine, CreateVMOpts, MachineConfig, MountType, QEMUConfig, QMPMonitor, VMFile
from machine_stubber.network import GvproxyCommand, prepare_proxy
from machine_stubber.qemu_cmd import build_qemu_command
from machine_stubber.qmp_client import QMPMonitorClient
from machine_stubber.resource_cleanup import cleanup_pid, wait_pid_exit
from machine_stubber.stubber import VMStubber
from machine_stubber.vm_types import VMState, VMType

logger = get_logger(__name__)


class QEMUStubber(VMStubber):
    supports_usb_passthrough = True

    @property
    def vm_type(self) -> VMType:
        return VMType.QEMU

    @property
    def binary_name(self) -> str:
        return self.settings.qemu_binary

    def mount_type(self) -> MountType:
        return MountType.NINEP

    def _pid_file(self, mc: MachineConfig) -> VMFile | None:
        if mc.qemu_hypervisor is None:
            return None
        return mc.qemu_hypervisor.qemu_pid_path

    def _runtime_files(self, mc: MachineConfig) -> list[VMFile]:
        files = super()._runtime_files(mc)
        if mc.qemu_hypervisor is not None:
            files.append(mc.qemu_hypervisor.qmp_monitor.address)
        return files

    def _build_command(self, mc: MachineConfig, binary: Path, ignition: VMFile) -> CommandLine:
        # Display decided at start so a later log level change takes effect
        return build_qemu_command(mc, binary, ignition, debug=debug_enabled())

    async def _resize_disk(self, new_size_gib: int, disk: VMFile) -> None:
        await resize_qcow2(new_size_gib, disk, self.settings)

    async def create_vm(self, opts: CreateVMOpts, mc: MachineConfig) -> None:
        """Allocate the QMP monitor and pid file, then grow the disk to its configured size."""
        self.check_transition(VMState.CREATED)
        try:
            monitor = QMPMonitor.for_machine(opts.name, opts.runtime_dir)
            mc.qemu_hypervisor = QEMUConfig(
                qmp_monitor=monitor,
                qemu_pid_path=VMFile(path=mc.runtime_dir / f"{mc.name}_vm.pid"),
            )
            await self._resize_disk(mc.resources.disk_size, mc.image_path)
        except StubberError:
            await self.transition_state(VMState.FAILED)
            raise
        await self.transition_state(VMState.CREATED)

    async def start_networking(self, mc: MachineConfig, cmd: GvproxyCommand) -> None:
        await prepare_proxy(mc, cmd, scheme="unix")

    async def stop_vm(self, mc: MachineConfig, *, hard_stop: bool = False) -> None:
        """Shut the VM down through QMP, falling back to signals.

        Raises:
            InvalidStateTransitionError: VM is neither Running nor Failed
            MonitorError: Hypervisor survived SIGKILL
        """
        if self.state != VMState.FAILED:
            await self.transition_state(VMState.STOPPING)

        pid = await self._current_pid(mc)
        if pid is not None:
            await self._stop_process(mc, pid, hard_stop)

        await self._clean_after_stop(mc)
        await self.transition_state(VMState.STOPPED)

    async def _stop_process(self, mc: MachineConfig, pid: int, hard_stop: bool) -> None:
        if mc.qemu_hypervisor is not None:
            monitor = mc.qemu_hypervisor.qmp_monitor
            try:
                async with QMPMonitorClient(monitor.address.get_path(), timeout=monitor.timeout) as qmp:
                    if hard_stop:
                        await qmp.quit()
                    else:
                        await qmp.system_powerdown()
            except MonitorError as e:
                logger.warning(
                    "QMP shutdown failed, signalling qemu",
                    extra={"machine": mc.name, "pid": pid, "error": e.message},
                )
            else:
                if await wait_pid_exit(pid, self.settings.stop_timeout):
                    logger.info("VM stopped", extra={"machine": mc.name, "pid": pid})
                    return
                logger.warning("qemu did not exit after shutdown request", extra={"machine": mc.name, "pid": pid})

        if not await cleanup_pid(pid, "qemu"):
            if self.state != VMState.FAILED:
                await self.transition_state(VMState.FAILED)
            raise MonitorError("unable to stop qemu", context={"machine": mc.name, "pid": pid})
