"""Tests for hypervisor launch and supervision.

Real child processes (sys.executable) stand in for the hypervisor.
"""

import asyncio
import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from machine_stubber.exceptions import BinaryNotFoundError, ProcessLaunchError
from machine_stubber.resource_cleanup import pid_alive
from machine_stubber.settings import Settings
from machine_stubber.subprocess_utils import StderrBuffer, drain_stream
from machine_stubber.supervisor import launch

SLEEPER = (sys.executable, "-c", "import time; time.sleep(30)")


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.02)


class TestLaunch:
    async def test_captures_stderr(self, settings: Settings) -> None:
        cmdline = (sys.executable, "-c", "import sys; sys.stderr.write('qemu: boom\\n')")
        proc = await launch(cmdline, binary_name="qemu", context_id="vm1", settings=settings)

        await _wait_for(lambda: "boom" in proc.stderr.getvalue())
        assert proc.stderr.getvalue() == "qemu: boom\n"
        assert proc.cmdline == cmdline

    async def test_stdout_discarded(self, settings: Settings) -> None:
        cmdline = (sys.executable, "-c", "print('hello')")
        proc = await launch(cmdline, binary_name="qemu", context_id="vm1", settings=settings)
        await _wait_for(lambda: not pid_alive(proc.pid))
        assert proc.stderr.getvalue() == ""

    async def test_health_check_tracks_process(self, settings: Settings) -> None:
        proc = await launch(SLEEPER, binary_name="qemu", context_id="vm1", settings=settings)
        check = proc.health_check()
        try:
            assert await check.is_alive()
        finally:
            assert await proc.terminate(timeout=2.0)
        assert not await check.is_alive()

    async def test_release_does_not_kill(self, settings: Settings) -> None:
        proc = await launch(SLEEPER, binary_name="qemu", context_id="vm1", settings=settings)
        try:
            proc.release()
            proc.release()
            assert proc.released
            await asyncio.sleep(0.1)
            assert pid_alive(proc.pid)
        finally:
            await proc.terminate(timeout=2.0)

    async def test_writes_pid_file(self, settings: Settings, tmp_path: Path) -> None:
        pid_file = tmp_path / "vm1_vfkit.pid"
        proc = await launch(SLEEPER, binary_name="vfkit", context_id="vm1", settings=settings, pid_file=pid_file)
        try:
            assert pid_file.read_text().strip() == str(proc.pid)
        finally:
            await proc.terminate(timeout=2.0)

    async def test_pid_file_failure_kills_process(self, settings: Settings, tmp_path: Path) -> None:
        pid_file = tmp_path / "missing" / "vm1_vfkit.pid"

        with pytest.raises(ProcessLaunchError) as exc_info:
            await launch(SLEEPER, binary_name="vfkit", context_id="vm1", settings=settings, pid_file=pid_file)

        assert exc_info.value.context["pid_file"] == str(pid_file)
        assert not pid_alive(exc_info.value.context["pid"])

    async def test_empty_cmdline(self, settings: Settings) -> None:
        with pytest.raises(ProcessLaunchError):
            await launch((), binary_name="qemu", context_id="vm1", settings=settings)


class TestBinaryReResolution:
    async def test_relaunches_with_resolved_path(self, settings: Settings) -> None:
        cmdline = ("/nonexistent/qemu-system-x86_64", "-c", "import time; time.sleep(30)")

        with patch("machine_stubber.supervisor.find_helper_binary", return_value=Path(sys.executable)) as find:
            proc = await launch(cmdline, binary_name="qemu-system-x86_64", context_id="vm1", settings=settings)
        try:
            find.assert_called_once_with("qemu-system-x86_64", settings)
            assert proc.cmdline[0] == sys.executable
            assert proc.cmdline[1:] == cmdline[1:]
        finally:
            await proc.terminate(timeout=2.0)

    async def test_second_failure_is_fatal(self, settings: Settings) -> None:
        cmdline = ("/nonexistent/qemu", "-version")

        with (
            patch("machine_stubber.supervisor.find_helper_binary", return_value=Path("/still/missing/qemu")),
            pytest.raises(ProcessLaunchError) as exc_info,
        ):
            await launch(cmdline, binary_name="qemu", context_id="vm1", settings=settings)

        assert exc_info.value.context["cmdline"] == ["/still/missing/qemu", "-version"]
        assert "/still/missing/qemu" in exc_info.value.message

    async def test_lookup_failure_propagates(self, settings: Settings) -> None:
        with pytest.raises(BinaryNotFoundError):
            await launch(("/nonexistent/qemu",), binary_name="definitely-not-a-binary", context_id="vm1", settings=settings)

    async def test_other_launch_errors_not_retried(self, settings: Settings, tmp_path: Path) -> None:
        not_executable = tmp_path / "qemu"
        not_executable.write_text("")
        os.chmod(not_executable, 0o600)

        with (
            patch("machine_stubber.supervisor.find_helper_binary") as find,
            pytest.raises(ProcessLaunchError),
        ):
            await launch((str(not_executable),), binary_name="qemu", context_id="vm1", settings=settings)
        find.assert_not_called()


class TestStderrBuffer:
    def test_keeps_tail(self) -> None:
        buf = StderrBuffer(max_bytes=8)
        buf.write(b"0123456789")
        buf.write(b"ab")
        assert buf.getvalue() == "456789ab"
        assert len(buf) == 8


class TestDrainStream:
    async def test_line_longer_than_stream_limit(self) -> None:
        stream = asyncio.StreamReader()
        stream.feed_data(b"x" * 70_000 + b"\n")
        stream.feed_data(b"tail\n")
        stream.feed_eof()
        buf = StderrBuffer(max_bytes=16)

        await drain_stream(stream, buf, process_name="qemu", context_id="vm1")

        assert buf.getvalue() == "x" * 10 + "\ntail\n"
