"""Tests for library logging setup."""

import logging
from collections.abc import Generator

import pytest

from machine_stubber._logging import (
    LIBRARY_LOGGER_NAME,
    MachineContextFormatter,
    _level_from_env,
    _NonBlockingHandler,
    configure_logging,
    debug_enabled,
)


@pytest.fixture
def lib_logger() -> Generator[logging.Logger]:
    logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    level, handlers = logger.level, list(logger.handlers)
    yield logger
    for handler in logger.handlers:
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)


class TestConfigureLogging:
    def test_idempotent_handler(self, lib_logger: logging.Logger) -> None:
        configure_logging(level=logging.INFO)
        configure_logging(level=logging.INFO)
        assert sum(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers) == 1

    def test_quiet_wins(self, lib_logger: logging.Logger) -> None:
        configure_logging(level=logging.DEBUG, quiet=True)
        assert lib_logger.level == logging.ERROR

    def test_debug_enabled_follows_level(self, lib_logger: logging.Logger) -> None:
        configure_logging(level=logging.DEBUG)
        assert debug_enabled()
        configure_logging(level=logging.WARNING)
        assert not debug_enabled()


def _record(msg: str, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord("machine_stubber.qemu_stubber", logging.WARNING, __file__, 1, msg, None, None)
    record.__dict__.update(extra)
    return record


class TestMachineContextFormatter:
    def test_appends_context_in_fixed_order(self) -> None:
        line = MachineContextFormatter().format(_record("QMP shutdown failed", pid=4242, machine="vm1"))
        assert line.endswith("machine_stubber.qemu_stubber - QMP shutdown failed (machine=vm1 pid=4242)")

    def test_ignores_unknown_and_empty_fields(self) -> None:
        line = MachineContextFormatter().format(_record("Started", machine="vm1", error="", cmdline=["qemu"]))
        assert line.endswith(" - Started (machine=vm1)")

    def test_no_context(self) -> None:
        assert MachineContextFormatter().format(_record("hello")).endswith(" - hello")


class TestEnvLevel:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [("debug", logging.DEBUG), (" WARNING ", logging.WARNING), ("NOTSET", None), ("loud", None), ("", None)],
    )
    def test_parsing(self, monkeypatch: pytest.MonkeyPatch, value: str, expected: int | None) -> None:
        monkeypatch.setenv("MACHINE_STUBBER_LOG_LEVEL", value)
        assert _level_from_env() == expected
