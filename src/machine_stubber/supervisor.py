"""Hypervisor process launch and supervision.

The hypervisor is started in its own session with stdin/stdout on
/dev/null and stderr drained into a bounded in-memory buffer, so a crash
during boot can be reported with the hypervisor's own words. After
release() the parent stops tracking the process and may exit while the
VM keeps running.
"""

from __future__ import annotations

import asyncio
import shlex
from pathlib import Path

import aiofiles

from machine_stubber._logging import get_logger
from machine_stubber.exceptions import ProcessLaunchError
from machine_stubber.helper_binaries import find_helper_binary
from machine_stubber.models import CommandLine
from machine_stubber.resource_cleanup import cleanup_pid
from machine_stubber.settings import Settings
from machine_stubber.sockets import PidHealthCheck
from machine_stubber.subprocess_utils import StderrBuffer, drain_stream, log_task_exception

logger = get_logger(__name__)


class SupervisedProcess:
    """Handle to a launched hypervisor process.

    Attributes:
        name: Process identifier for logs and errors (e.g. "qemu")
        cmdline: Command line the process was actually started with
        stderr: Captured standard error
    """

    def __init__(
        self,
        name: str,
        process: asyncio.subprocess.Process,
        cmdline: CommandLine,
        stderr: StderrBuffer,
        drain_task: asyncio.Task[None] | None = None,
    ) -> None:
        self.name = name
        self.cmdline = cmdline
        self.stderr = stderr
        self._process = process
        self._drain_task = drain_task
        self._released = False

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def released(self) -> bool:
        return self._released

    def health_check(self) -> PidHealthCheck:
        """Liveness probe bound to this process and its stderr buffer."""
        return PidHealthCheck(self.pid, self.stderr, name=self.name)

    def release(self) -> None:
        """Detach from the process without signalling it. Idempotent."""
        if self._released:
            return
        self._released = True
        logger.debug("Released hypervisor process", extra={"process": self.name, "pid": self.pid})

    async def terminate(self, timeout: float = 3.0) -> bool:
        """Stop the process (SIGTERM, then SIGKILL). Used on failed starts."""
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
        return await cleanup_pid(self.pid, self.name, term_timeout=timeout)


async def _spawn(argv: list[str]) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,  # VM outlives the supervising process
    )


async def launch(
    cmdline: CommandLine,
    *,
    binary_name: str,
    context_id: str,
    settings: Settings,
    pid_file: Path | None = None,
) -> SupervisedProcess:
    """Start the process described by cmdline.

    If the executable is missing (e.g. the package was upgraded and moved
    it), it is looked up again by binary_name and the launch retried once.

    Args:
        cmdline: Executable followed by its arguments
        binary_name: Logical helper-binary name for the re-resolution
        context_id: Machine name for log correlation
        settings: Helper binary dirs and stderr buffer size
        pid_file: Write the child's pid here (for hypervisors without a pidfile flag)

    Returns:
        SupervisedProcess handle

    Raises:
        ProcessLaunchError: Spawn failed (after re-resolution if applicable)
        BinaryNotFoundError: Re-resolution found no binary
    """
    if not cmdline:
        raise ProcessLaunchError("empty command line", context={"machine": context_id})

    argv = list(cmdline)
    try:
        process = await _spawn(argv)
    except FileNotFoundError as e:
        logger.warning(
            "Hypervisor binary not found, looking it up again",
            extra={"machine": context_id, "binary": argv[0], "error": str(e)},
        )
        argv[0] = str(find_helper_binary(binary_name, settings))
        try:
            process = await _spawn(argv)
        except OSError as retry_error:
            raise ProcessLaunchError(
                f"unable to execute {shlex.join(argv)!r}: {retry_error}",
                context={"machine": context_id, "cmdline": argv},
            ) from retry_error
    except OSError as e:
        raise ProcessLaunchError(
            f"unable to execute {shlex.join(argv)!r}: {e}",
            context={"machine": context_id, "cmdline": argv},
        ) from e

    stderr = StderrBuffer(settings.stderr_max_bytes)
    drain_task = None
    if process.stderr is not None:
        drain_task = asyncio.create_task(
            drain_stream(process.stderr, stderr, process_name=binary_name, context_id=context_id)
        )
        drain_task.add_done_callback(log_task_exception)

    supervised = SupervisedProcess(binary_name, process, tuple(argv), stderr, drain_task)
    if pid_file is not None:
        try:
            async with aiofiles.open(pid_file, "w") as f:
                await f.write(f"{process.pid}\n")
        except OSError as e:
            # Nobody could find this process again without its pid file
            await supervised.terminate()
            raise ProcessLaunchError(
                f"unable to record {binary_name} pid in {pid_file}: {e}",
                context={"machine": context_id, "pid": process.pid, "pid_file": str(pid_file)},
            ) from e

    logger.debug("Started hypervisor", extra={"machine": context_id, "pid": process.pid, "binary": argv[0]})
    return supervised
