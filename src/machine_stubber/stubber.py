"""Backend-agnostic VM lifecycle contract.

A VMStubber instance supervises one VM. It owns the lifecycle state
machine, the start sequence (command line, network proxy wait, launch)
and the state-gated attribute changes. Backends fill in the hypervisor
specific hooks.

Start sequence:
    start_vm()  -> command line built, proxy socket confirmed, process launched
    handle.release()      -> optional, detach so the caller may exit
    handle.await_ready()  -> guest boot signal; RUNNING on success, FAILED on error
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable

from machine_stubber._logging import get_logger
from machine_stubber.exceptions import InvalidStateTransitionError, StubberError, VmConfigError
from machine_stubber.helper_binaries import find_helper_binary
from machine_stubber.models import (
    BackoffPolicy,
    CommandLine,
    CreateVMOpts,
    MachineConfig,
    MountType,
    SetOptions,
    VMFile,
    parse_usbs,
)
from machine_stubber.mounts import ChattrRootPolicy, RemoteExecutor, RootImmutabilityPolicy, SSHRemoteExecutor, mount_all
from machine_stubber.network import GvproxyCommand, await_proxy_ready
from machine_stubber.providers import DiskImageProvider, FirstBootConfigProvider, IgnitionFileProvider
from machine_stubber.readiness import wait_for_ready
from machine_stubber.resource_cleanup import cleanup_file, pid_alive, read_pid_file
from machine_stubber.settings import Settings
from machine_stubber.supervisor import SupervisedProcess, launch
from machine_stubber.vm_types import VALID_STATE_TRANSITIONS, VMState, VMType

logger = get_logger(__name__)


def _ssh_executor(mc: MachineConfig) -> RemoteExecutor:
    return SSHRemoteExecutor(mc.ssh, mc.name)


class StartHandle:
    """Result of start_vm: the launched hypervisor plus the deferred readiness wait."""

    def __init__(
        self,
        stubber: VMStubber,
        mc: MachineConfig,
        process: SupervisedProcess,
        ready_policy: BackoffPolicy,
    ) -> None:
        self._stubber = stubber
        self._mc = mc
        self._ready_policy = ready_policy
        self.process = process

    @property
    def pid(self) -> int:
        return self.process.pid

    def release(self) -> None:
        """Detach from the hypervisor without stopping it."""
        self.process.release()

    async def await_ready(self) -> None:
        """Wait for the guest boot signal.

        Raises:
            ReadinessTimeoutError: Guest never opened its ready channel
            ProcessDiedError: Hypervisor exited while waiting (carries stderr)
            GuestReadError: Channel closed before the ready line
        """
        try:
            await wait_for_ready(
                self._mc.ready_socket().get_path(),
                self.process.health_check(),
                self._ready_policy,
            )
        except BaseException as e:
            # Includes CancelledError: a caller that gives up leaves the VM stoppable
            if not isinstance(e, StubberError):
                logger.warning(
                    "Readiness wait aborted",
                    extra={"machine": self._mc.name, "pid": self.pid, "error": repr(e)},
                )
            await self._stubber.transition_state(VMState.FAILED)
            raise
        await self._stubber.transition_state(VMState.RUNNING)
        logger.info("VM is running", extra={"machine": self._mc.name, "pid": self.pid})


class VMStubber(ABC):
    """Lifecycle operations shared by every hypervisor backend."""

    supports_usb_passthrough: bool = False
    # Proxy endpoint is a datagram socket (vfkit) rather than a stream socket (qemu)
    proxy_datagram: bool = False

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        ignition_provider: FirstBootConfigProvider | None = None,
        disk_provider: DiskImageProvider | None = None,
        root_policy: RootImmutabilityPolicy | None = None,
        executor_factory: Callable[[MachineConfig], RemoteExecutor] | None = None,
        initial_state: VMState = VMState.UNINITIALIZED,
    ) -> None:
        self.settings = settings or Settings()
        self.ignition_provider = ignition_provider or IgnitionFileProvider()
        self.disk_provider = disk_provider
        self.root_policy = root_policy or ChattrRootPolicy()
        self.executor_factory = executor_factory or _ssh_executor
        self._state = initial_state
        self._state_lock = asyncio.Lock()
        self._process: SupervisedProcess | None = None

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def vm_type(self) -> VMType: ...

    @property
    @abstractmethod
    def binary_name(self) -> str:
        """Logical hypervisor binary name, resolved through the helper dirs."""

    @abstractmethod
    def mount_type(self) -> MountType: ...

    @abstractmethod
    async def create_vm(self, opts: CreateVMOpts, mc: MachineConfig) -> None: ...

    @abstractmethod
    async def stop_vm(self, mc: MachineConfig, *, hard_stop: bool = False) -> None: ...

    @abstractmethod
    async def start_networking(self, mc: MachineConfig, cmd: GvproxyCommand) -> None: ...

    @abstractmethod
    async def _resize_disk(self, new_size_gib: int, disk: VMFile) -> None: ...

    @abstractmethod
    def _build_command(self, mc: MachineConfig, binary: Path, ignition: VMFile) -> CommandLine: ...

    @abstractmethod
    def _pid_file(self, mc: MachineConfig) -> VMFile | None:
        """Where the hypervisor pid is recorded."""

    def _supervisor_pid_file(self, mc: MachineConfig) -> Path | None:
        """Pid file the supervisor writes, for hypervisors that cannot write their own."""
        return None

    def _runtime_files(self, mc: MachineConfig) -> list[VMFile]:
        files = [mc.ready_socket(), mc.gvproxy_socket()]
        pid_file = self._pid_file(mc)
        if pid_file is not None:
            files.append(pid_file)
        return files

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def state(self) -> VMState:
        """Current VM state."""
        return self._state

    @property
    def process(self) -> SupervisedProcess | None:
        """Hypervisor launched by the last start_vm, if any."""
        return self._process

    def check_transition(self, new_state: VMState) -> None:
        """Raise if new_state is not reachable from the current state. Changes nothing."""
        allowed_transitions = VALID_STATE_TRANSITIONS.get(self._state, set())
        if new_state not in allowed_transitions:
            raise InvalidStateTransitionError(
                f"Invalid state transition: {self._state.value} -> {new_state.value}",
                context={
                    "vm_type": self.vm_type.value,
                    "current_state": self._state.value,
                    "target_state": new_state.value,
                    "allowed_transitions": sorted(s.value for s in allowed_transitions),
                },
            )

    async def transition_state(self, new_state: VMState) -> None:
        """Move to new_state, validated against VALID_STATE_TRANSITIONS.

        Raises:
            InvalidStateTransitionError: Edge not allowed from the current state
        """
        async with self._state_lock:
            self.check_transition(new_state)
            old_state = self._state
            self._state = new_state
            logger.debug(
                "VM state transition",
                extra={"vm_type": self.vm_type.value, "old_state": old_state.value, "new_state": new_state.value},
            )

    async def _current_pid(self, mc: MachineConfig) -> int | None:
        if self._process is not None:
            return self._process.pid
        pid_file = self._pid_file(mc)
        if pid_file is None or pid_file.path is None:
            return None
        return await read_pid_file(pid_file.path)

    async def refresh_state(self, mc: MachineConfig) -> VMState:
        """Reconcile a RUNNING state with the hypervisor process.

        A hypervisor that exited on its own (guest shutdown, crash) moves the
        VM to STOPPED.
        """
        if self._state == VMState.RUNNING:
            pid = await self._current_pid(mc)
            if pid is None or not await asyncio.to_thread(pid_alive, pid):
                logger.info("Hypervisor no longer running", extra={"machine": mc.name, "pid": pid})
                await self.transition_state(VMState.STOPPED)
        return self._state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_vm(self, mc: MachineConfig) -> StartHandle:
        """Launch the hypervisor.

        The network proxy must already be running: its socket is awaited
        before the hypervisor is started, and nothing is launched if it
        never appears. Readiness is left to the returned handle.

        Raises:
            InvalidStateTransitionError: VM is not Created, Stopped or Failed
            NetworkProxyUnavailableError: Proxy socket never became connectable
            ProcessLaunchError: Hypervisor could not be spawned
        """
        await self.transition_state(VMState.STARTING)
        try:
            binary = find_helper_binary(self.binary_name, self.settings)
            ignition = self.prepare_ignition(mc)
            cmdline = self._build_command(mc, binary, ignition)
            await await_proxy_ready(mc, self.settings.gvproxy_policy(), datagram=self.proxy_datagram)
            await cleanup_file(mc.ready_socket().path, "stale ready socket")
            process = await launch(
                cmdline,
                binary_name=self.binary_name,
                context_id=mc.name,
                settings=self.settings,
                pid_file=self._supervisor_pid_file(mc),
            )
        except BaseException as e:
            if not isinstance(e, StubberError):
                logger.warning("Start aborted", extra={"machine": mc.name, "error": repr(e)})
            await self.transition_state(VMState.FAILED)
            raise

        self._process = process
        logger.info(
            "Started hypervisor",
            extra={"machine": mc.name, "vm_type": self.vm_type.value, "pid": process.pid},
        )
        return StartHandle(self, mc, process, self.settings.ready_policy())

    async def set_provider_attrs(self, mc: MachineConfig, opts: SetOptions) -> None:
        """Apply disk size, rootful and USB changes to a stopped VM.

        Raises:
            InvalidStateTransitionError: VM is not Stopped (nothing is changed)
            VmConfigError: Malformed USB spec or backend without USB passthrough
            DiskResizeError: Resize utility failed
        """
        if self._state != VMState.STOPPED:
            raise InvalidStateTransitionError(
                "unable to change settings unless vm is stopped",
                context={"machine": mc.name, "current_state": self._state.value},
            )

        usbs = None
        if opts.usbs is not None:
            if opts.usbs and not self.supports_usb_passthrough:
                raise VmConfigError(
                    f"USB passthrough is not supported by {self.vm_type.value}",
                    context={"machine": mc.name},
                )
            usbs = parse_usbs(opts.usbs)

        if opts.disk_size is not None:
            await self._resize_disk(opts.disk_size, mc.image_path)
            mc.resources.disk_size = opts.disk_size

        if opts.rootful is not None and mc.host_user.rootful != opts.rootful:
            mc.set_rootful(opts.rootful)

        if usbs is not None:
            mc.resources.usbs = usbs

    async def mount_volumes_to_vm(self, mc: MachineConfig, quiet: bool = False) -> None:
        """Mount the machine's shared directories inside the running guest."""
        await mount_all(
            mc.mounts,
            self.executor_factory(mc),
            supported=[self.mount_type()],
            policy=self.root_policy,
            quiet=quiet,
        )

    async def get_disk(self, user_input: str, mc: MachineConfig) -> None:
        """Acquire the boot image through the disk provider and record its path."""
        if self.disk_provider is None:
            raise VmConfigError("no disk image provider configured", context={"machine": mc.name})
        path = await self.disk_provider.fetch(user_input, mc, self.vm_type)
        mc.image_path = VMFile(path=path)

    def prepare_ignition(self, mc: MachineConfig) -> VMFile:
        """First-boot configuration handle passed to the hypervisor."""
        return self.ignition_provider.config_handle(mc)

    async def remove_and_clean_machines(self, mc: MachineConfig) -> None:
        """Delete the runtime artifacts (sockets, pid files) this backend creates."""
        for vm_file in self._runtime_files(mc):
            await cleanup_file(vm_file.path, "runtime file")

    async def _clean_after_stop(self, mc: MachineConfig) -> None:
        # The proxy socket belongs to gvproxy, which may outlive this VM run
        self._process = None
        proxy_socket = mc.gvproxy_socket()
        for vm_file in self._runtime_files(mc):
            if vm_file != proxy_socket:
                await cleanup_file(vm_file.path, "runtime file")

    async def post_start_networking(self, mc: MachineConfig, no_info: bool = False) -> None:
        return None

    async def stop_host_networking(self, mc: MachineConfig) -> None:
        raise NotImplementedError(f"{self.vm_type.value} does not manage host networking")

    def user_mode_network_enabled(self, mc: MachineConfig) -> bool:
        return True

    def use_provider_network_setup(self) -> bool:
        return False

    def require_exclusive_active(self) -> bool:
        return True

    async def exists(self, name: str) -> bool:
        # Machines are tracked by the caller's config store, not by the backend
        return False
