"""Resource cleanup utilities for the VM lifecycle.

Cleanup operations log errors but never raise. The hypervisor is usually
no longer our child (it was released, or started by an earlier
invocation), so processes are addressed by pid through psutil.
"""

import asyncio
from pathlib import Path

import aiofiles
import aiofiles.os
import psutil

from machine_stubber._logging import get_logger

logger = get_logger(__name__)


async def read_pid_file(pid_file: Path) -> int | None:
    """Read a pid written by the hypervisor (or by the supervisor for vfkit).

    Returns:
        The pid, or None if the file is missing or does not hold an integer
    """
    try:
        async with aiofiles.open(pid_file) as f:
            content = (await f.read()).strip()
    except FileNotFoundError:
        return None
    try:
        return int(content)
    except ValueError:
        logger.warning("Malformed pid file", extra={"path": str(pid_file), "content": content[:64]})
        return None


def pid_alive(pid: int) -> bool:
    """True if pid names a live (non-zombie) process."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


async def wait_pid_exit(pid: int, timeout: float, poll_interval: float = 0.1) -> bool:
    """Wait until pid is gone.

    Returns:
        True if the process exited within timeout
    """
    try:
        async with asyncio.timeout(timeout):
            while await asyncio.to_thread(pid_alive, pid):
                await asyncio.sleep(poll_interval)
    except TimeoutError:
        return False
    return True


async def cleanup_pid(
    pid: int | None,
    name: str,
    term_timeout: float = 3.0,
    kill_timeout: float = 2.0,
) -> bool:
    """Force cleanup of a process by pid (SIGTERM → SIGKILL).

    Args:
        pid: Process to stop (None safe - returns immediately)
        name: Process name for logging (e.g., "qemu", "vfkit")
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process is gone, False if issues occurred
    """
    if pid is None:
        return True

    try:
        proc = psutil.Process(pid)
        logger.debug(f"Sending SIGTERM to {name}", extra={"pid": pid})
        await asyncio.to_thread(proc.terminate)
        if await wait_pid_exit(pid, term_timeout):
            logger.debug(f"{name} stopped gracefully (SIGTERM)", extra={"pid": pid})
            return True

        logger.warning(f"{name} didn't respond to SIGTERM, force killing", extra={"pid": pid})
        await asyncio.to_thread(proc.kill)
        if await wait_pid_exit(pid, kill_timeout):
            return True

        logger.error(f"{name} didn't respond to SIGKILL within timeout", extra={"pid": pid})
        return False

    except psutil.NoSuchProcess:
        logger.debug(f"{name} already dead", extra={"pid": pid})
        return True

    except psutil.AccessDenied as e:
        logger.error(f"{name} cleanup denied", extra={"pid": pid, "error": str(e)})
        return False


async def cleanup_file(file_path: Path | None, description: str = "file") -> bool:
    """Delete file. Silently succeeds if it doesn't exist.

    Returns:
        True if the file is gone, False if it could not be removed
    """
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
        logger.debug(f"{description} deleted", extra={"path": str(file_path)})
        return True
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.error(
            f"{description} OS error during deletion",
            extra={"path": str(file_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False
