"""Backoff-based Unix socket synchronization.

Both the guest readiness wait and the network proxy wait poll a socket
that some other process creates. The shared harness here makes a bounded
number of connect attempts with a fixed delay and, when given a health
check, gives up as soon as the process that should create the socket is
gone.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from pathlib import Path
from typing import Protocol

import psutil
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from machine_stubber._logging import get_logger
from machine_stubber.exceptions import ProcessDiedError, SocketWaitTimeoutError
from machine_stubber.models import BackoffPolicy
from machine_stubber.subprocess_utils import StderrBuffer

logger = get_logger(__name__)


class ProcessHealthCheck(Protocol):
    """Liveness probe for the process expected to open a socket."""

    name: str

    async def is_alive(self) -> bool: ...

    def diagnostics(self) -> str: ...


class PidHealthCheck:
    """Health check bound to a pid, backed by psutil.

    Zombies count as dead: a hypervisor that exited but was not reaped yet
    will never open its socket.
    """

    def __init__(self, pid: int, stderr: StderrBuffer | None = None, name: str = "qemu") -> None:
        self.pid = pid
        self.name = name
        self._stderr = stderr

    async def is_alive(self) -> bool:
        return await asyncio.to_thread(self._is_alive_sync)

    def _is_alive_sync(self) -> bool:
        try:
            return psutil.Process(self.pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def diagnostics(self) -> str:
        if self._stderr is None:
            return ""
        return self._stderr.getvalue()


async def _connect(path: Path) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await asyncio.open_unix_connection(str(path))


def _probe_datagram(path: Path) -> None:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.connect(str(path))
    finally:
        sock.close()


async def _raise_if_dead(health_check: ProcessHealthCheck, path: Path) -> None:
    if await health_check.is_alive():
        return
    diagnostics = health_check.diagnostics()
    raise ProcessDiedError(
        f"{health_check.name} exited unexpectedly",
        context={"process": health_check.name, "socket": str(path)},
        diagnostics=diagnostics,
    )


async def dial_with_backoff(
    path: Path,
    policy: BackoffPolicy,
    *,
    name: str,
    health_check: ProcessHealthCheck | None = None,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Connect to a Unix socket, retrying on a fixed schedule.

    Args:
        path: Socket path
        policy: Attempt count and inter-attempt delay
        name: What owns the socket (for messages), e.g. "gvproxy"
        health_check: Optional probe consulted before every attempt

    Returns:
        Connected (reader, writer) streams

    Raises:
        ProcessDiedError: Health check reported the process gone
        SocketWaitTimeoutError: All attempts failed while the process (if any) lived
    """
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(policy.attempts),
            wait=wait_fixed(policy.delay),
            # ProcessDiedError is not an OSError: it ends the loop at once
            retry=retry_if_exception_type(OSError),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
        ):
            with attempt:
                if health_check is not None:
                    await _raise_if_dead(health_check, path)
                return await _connect(path)
    except RetryError as e:
        last_error = e.last_attempt.exception()
        # The process may have died during the final delay
        if health_check is not None:
            await _raise_if_dead(health_check, path)
        raise SocketWaitTimeoutError(
            f"unable to connect to {name} socket at {path!s}: {last_error}",
            context={
                "socket": str(path),
                "process": name,
                "attempts": policy.attempts,
                "delay": policy.delay,
            },
        ) from last_error

    raise AssertionError("Unreachable: AsyncRetrying exhausted without exception")


async def wait_for_socket_with_backoff(
    path: Path,
    policy: BackoffPolicy,
    *,
    name: str,
    datagram: bool = False,
) -> None:
    """Wait until a socket accepts connections, then close the probe connection.

    Args:
        datagram: Probe a SOCK_DGRAM socket (vfkit's proxy endpoint) instead of a stream socket

    Raises:
        SocketWaitTimeoutError: Socket never became connectable
    """
    if not datagram:
        _, writer = await dial_with_backoff(path, policy, name=name)
        writer.close()
        await writer.wait_closed()
        return

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(policy.attempts),
            wait=wait_fixed(policy.delay),
            retry=retry_if_exception_type(OSError),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
        ):
            with attempt:
                await asyncio.to_thread(_probe_datagram, path)
    except RetryError as e:
        last_error = e.last_attempt.exception()
        raise SocketWaitTimeoutError(
            f"unable to connect to {name} socket at {path!s}: {last_error}",
            context={"socket": str(path), "process": name, "attempts": policy.attempts, "delay": policy.delay},
        ) from last_error
