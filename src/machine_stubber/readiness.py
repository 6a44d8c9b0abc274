"""Guest boot-completion synchronization.

The guest opens nothing itself; the hypervisor exposes a serial/vsock
channel as a host Unix socket and the guest writes exactly one
newline-terminated line to it once boot and provisioning are complete.
Only the arrival of that line matters, not its content.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

from machine_stubber import constants
from machine_stubber._logging import get_logger
from machine_stubber.exceptions import GuestReadError, ReadinessTimeoutError, SocketWaitTimeoutError
from machine_stubber.models import BackoffPolicy
from machine_stubber.sockets import ProcessHealthCheck, dial_with_backoff

logger = get_logger(__name__)

READY_POLICY = BackoffPolicy(
    attempts=constants.READY_MAX_ATTEMPTS,
    delay=constants.READY_ATTEMPT_DELAY_SECONDS,
)

# Only this much of the ready line is kept for logs and errors
_KEPT_LINE_BYTES = 1024


async def _read_line(reader: asyncio.StreamReader) -> bytes:
    """Consume input through the first newline, whatever its length.

    Returns the start of the line (at most _KEPT_LINE_BYTES).

    Raises:
        asyncio.IncompleteReadError: EOF before a newline
    """
    kept = bytearray()
    while True:
        chunk = await reader.read(4096)
        if not chunk:
            raise asyncio.IncompleteReadError(bytes(kept), None)
        end = chunk.find(b"\n")
        piece = chunk if end < 0 else chunk[: end + 1]
        kept += piece[: max(_KEPT_LINE_BYTES - len(kept), 0)]
        if end >= 0:
            return bytes(kept)


async def wait_for_ready(
    ready_socket: Path,
    health_check: ProcessHealthCheck,
    policy: BackoffPolicy = READY_POLICY,
) -> None:
    """Block until the guest signals boot completion on ready_socket.

    Args:
        ready_socket: Host side of the guest readiness channel
        health_check: Probe for the hypervisor process
        policy: Connect schedule (default 6 attempts, 500ms apart)

    Raises:
        ReadinessTimeoutError: Socket never accepted a connection while the hypervisor lived
        ProcessDiedError: Hypervisor exited during the wait (carries its stderr)
        GuestReadError: Connected, but the peer closed before sending a full line
    """
    try:
        reader, writer = await dial_with_backoff(
            ready_socket,
            policy,
            name=health_check.name,
            health_check=health_check,
        )
    except SocketWaitTimeoutError as e:
        raise ReadinessTimeoutError(
            f"guest did not become ready: {e.message}",
            context=e.context,
        ) from e

    try:
        line = await _read_line(reader)
    except asyncio.IncompleteReadError as e:
        raise GuestReadError(
            "readiness socket closed before the guest sent its ready line",
            context={"socket": str(ready_socket), "partial": e.partial.decode(errors="replace")},
        ) from e
    except OSError as e:
        raise GuestReadError(
            f"reading from readiness socket failed: {e}",
            context={"socket": str(ready_socket)},
        ) from e
    finally:
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()

    logger.debug("Guest signalled ready", extra={"socket": str(ready_socket), "line": line.decode(errors="replace")})
