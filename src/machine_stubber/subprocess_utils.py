"""Subprocess output utilities.

- StderrBuffer: bounded in-memory capture of a child's stderr for diagnostics
- drain_stream: background reader feeding a StderrBuffer (prevents pipe deadlock)
- log_task_exception: done-callback that surfaces background task failures
"""

from __future__ import annotations

import asyncio

from machine_stubber._logging import get_logger

logger = get_logger(__name__)


class StderrBuffer:
    """Bounded byte buffer keeping the most recent output.

    When more than max_bytes arrive, the oldest bytes are discarded so the
    tail (where crash messages usually are) survives.
    """

    def __init__(self, max_bytes: int = 64 * 1024) -> None:
        self._max_bytes = max_bytes
        self._buf = bytearray()

    def write(self, data: bytes) -> None:
        self._buf.extend(data)
        overflow = len(self._buf) - self._max_bytes
        if overflow > 0:
            del self._buf[:overflow]

    def getvalue(self) -> str:
        return self._buf.decode(errors="replace")

    def __len__(self) -> int:
        return len(self._buf)


async def drain_stream(
    stream: asyncio.StreamReader,
    buffer: StderrBuffer,
    *,
    process_name: str,
    context_id: str,
) -> None:
    """Copy a child's output stream into buffer until EOF.

    Without a reader the child blocks once the 64KB pipe buffer fills.

    Args:
        stream: Child stderr (or stdout) pipe
        buffer: Destination capture buffer
        process_name: Process identifier for logging (e.g., "qemu", "vfkit")
        context_id: Machine name for log correlation
    """
    # Fixed-size reads: line iteration fails on lines over the stream limit
    while chunk := await stream.read(4096):
        buffer.write(chunk)
        for line in chunk.decode(errors="replace").splitlines():
            decoded = line.rstrip()
            if decoded:
                logger.debug(f"[{process_name} stderr] {decoded}", extra={"context_id": context_id, "output": decoded})


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks.

    Usage:
        task = asyncio.create_task(some_coroutine())
        task.add_done_callback(log_task_exception)
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
