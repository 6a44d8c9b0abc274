"""Logging for machine-stubber.

The package logs through the "machine_stubber" logger hierarchy and
installs nothing but a NullHandler on import. MACHINE_STUBBER_LOG_LEVEL
picks the level; configure_logging() is for applications that want the
records printed.

Every lifecycle record carries its machine in ``extra``; the printed form
appends those fields so interleaved output from several VMs stays
readable:

    WARNING [2026-02-25 10:02:54] machine_stubber.qemu_stubber - QMP shutdown failed, signalling qemu (machine=vm1 pid=4242)

The handler is queue-backed: records go into a bounded FIFO and a daemon
thread writes them with click.echo(err=True), so a slow terminal never
stalls the coroutine supervising a VM. Records that do not fit are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "machine_stubber"

# Fields from ``extra`` shown after the message, in this order
CONTEXT_FIELDS: tuple[str, ...] = ("machine", "vm_type", "pid", "process", "socket", "binary", "error")

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# One VM start logs a few dozen records; this covers a burst from several
_QUEUE_CAPACITY = 1024

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())


def _level_from_env() -> int | None:
    name = os.environ.get("MACHINE_STUBBER_LOG_LEVEL", "").strip().upper()
    level = logging.getLevelNamesMapping().get(name)
    return level or None  # NOTSET counts as unset


if (_env_level := _level_from_env()) is not None:
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level)


class MachineContextFormatter(logging.Formatter):
    """Formatter that appends the record's machine context fields."""

    def __init__(self) -> None:
        super().__init__(fmt=_FMT, datefmt=_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = [
            f"{key}={getattr(record, key)}"
            for key in CONTEXT_FIELDS
            if getattr(record, key, None) not in (None, "")
        ]
        if fields:
            line = f"{line} ({' '.join(fields)})"
        return line


class _ClickHandler(logging.Handler):
    """Writes dimmed lines to stderr. Runs on the listener thread."""

    def __init__(self) -> None:
        super().__init__()
        self.formatter = MachineContextFormatter()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass  # stderr is non-blocking and full
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """QueueHandler whose enqueue never waits."""

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: the listener can format the original record
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Module logger; pass __name__ so it sits under machine_stubber."""
    return logging.getLogger(name)


def debug_enabled() -> bool:
    """True when the library logger would emit DEBUG records.

    Decides verbose-only command line pieces (the hypervisor display
    window), evaluated at each start so the level at create time does
    not stick.
    """
    return logging.getLogger(LIBRARY_LOGGER_NAME).isEnabledFor(logging.DEBUG)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Print library records on stderr.

    Safe to call more than once: the handler is added only the first time.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides the env var.
        quiet: Only errors. Wins over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
