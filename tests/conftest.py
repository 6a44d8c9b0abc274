"""Shared pytest fixtures for machine-stubber tests."""

import asyncio
import os
import shutil
import stat
import tempfile
from collections.abc import AsyncGenerator, Callable, Generator, Sequence
from pathlib import Path

import pytest

from machine_stubber.models import MachineConfig, MountSpec, ResourceConfig, VMFile
from machine_stubber.settings import Settings

# ============================================================================
# Paths
# ============================================================================
# Unix socket paths are limited to ~104 bytes on macOS (108 on Linux), and
# pytest's tmp_path is often longer than that. Socket tests use a short
# directory directly under the system temp dir instead.


@pytest.fixture
def short_dir() -> Generator[Path]:
    path = Path(tempfile.mkdtemp(prefix="ms-", dir="/tmp"))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def bin_dir(tmp_path: Path) -> Path:
    path = tmp_path / "bin"
    path.mkdir()
    return path


def make_executable(directory: Path, name: str, script: str = "#!/bin/sh\nexit 0\n") -> Path:
    """Drop an executable shell script into directory."""
    path = directory / name
    path.write_text(script)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


# ============================================================================
# Settings and machine configs
# ============================================================================


@pytest.fixture
def settings(bin_dir: Path) -> Settings:
    """Settings with fast backoff and helper binaries confined to bin_dir."""
    return Settings(
        helper_binaries_dir=[bin_dir],
        qemu_binary="qemu-system-x86_64",
        ready_attempts=3,
        ready_delay=0.05,
        gvproxy_attempts=3,
        gvproxy_delay=0.05,
        stop_timeout=2.0,
    )


@pytest.fixture
def make_machine_config(short_dir: Path) -> Callable[..., MachineConfig]:
    """Factory for MachineConfig rooted in short_dir."""

    def _make(name: str = "vm1", **overrides: object) -> MachineConfig:
        runtime_dir = short_dir / "run"
        config_dir = short_dir / "cfg"
        runtime_dir.mkdir(exist_ok=True)
        config_dir.mkdir(exist_ok=True)
        image = short_dir / f"{name}.img"
        image.write_bytes(b"")
        fields: dict[str, object] = {
            "name": name,
            "image_path": VMFile(path=image),
            "resources": ResourceConfig(cpus=2, memory=2048, disk_size=10),
            "runtime_dir": runtime_dir,
            "config_dir": config_dir,
        }
        fields.update(overrides)
        return MachineConfig(**fields)

    return _make


@pytest.fixture
def machine_config(make_machine_config: Callable[..., MachineConfig]) -> MachineConfig:
    return make_machine_config()


def mount(target: str, tag: str = "vol0", *, type: str = "9p", read_only: bool = False) -> MountSpec:
    return MountSpec(source=f"/host{target}", target=target, tag=tag, type=type, read_only=read_only)


# ============================================================================
# Remote execution
# ============================================================================


class RecordingExecutor:
    """RemoteExecutor that records commands instead of running them."""

    def __init__(self, fail_on: int | None = None, error: Exception | None = None) -> None:
        self.commands: list[list[str]] = []
        self._fail_on = fail_on
        self._error = error or RuntimeError("remote failure")

    async def run(self, args: Sequence[str]) -> str:
        self.commands.append(list(args))
        if self._fail_on is not None and len(self.commands) == self._fail_on:
            raise self._error
        return ""


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


# ============================================================================
# Sockets
# ============================================================================


class LineServer:
    """Unix stream server that sends one payload to each client, then closes."""

    def __init__(self, path: Path, payload: bytes = b"ready\n") -> None:
        self.path = path
        self.payload = payload
        self.connections = 0
        self._server: asyncio.Server | None = None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        writer.write(self.payload)
        await writer.drain()
        writer.close()

    async def start(self) -> None:
        self._server = await asyncio.start_unix_server(self._handle, path=str(self.path))

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
        if self.path.exists():
            os.unlink(self.path)


@pytest.fixture
async def line_server(short_dir: Path) -> AsyncGenerator[Callable[..., LineServer]]:
    servers: list[LineServer] = []

    def _make(path: Path, payload: bytes = b"ready\n") -> LineServer:
        server = LineServer(path, payload)
        servers.append(server)
        return server

    yield _make
    for server in servers:
        await server.stop()
