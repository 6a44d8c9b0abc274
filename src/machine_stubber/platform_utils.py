"""Cross-platform OS and architecture detection.

Uses psutil's built-in OS detection constants for platform identification.
"""

import platform
from enum import Enum, auto
from functools import cache
from pathlib import Path, PurePath

import psutil


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    MACOS = auto()
    WINDOWS = auto()
    UNKNOWN = auto()


class HostArch(Enum):
    """Supported host CPU architectures."""

    X86_64 = auto()
    AARCH64 = auto()
    UNKNOWN = auto()


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    if psutil.WINDOWS:
        return HostOS.WINDOWS
    return HostOS.UNKNOWN


@cache
def detect_host_arch() -> HostArch:
    """Detect current host CPU architecture.

    Returns:
        HostArch enum; UNKNOWN for anything besides x86_64/arm64
    """
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        return HostArch.X86_64
    if machine in ("aarch64", "arm64"):
        return HostArch.AARCH64
    return HostArch.UNKNOWN


def to_slash(path: str | PurePath) -> str:
    """Render a path with forward slashes regardless of host convention.

    The network proxy parses socket URLs with '/' separators even on Windows.
    """
    return str(path).replace("\\", "/")


def default_qemu_binary() -> str:
    """QEMU system emulator name for the host architecture."""
    if detect_host_arch() == HostArch.AARCH64:
        return "qemu-system-aarch64"
    return "qemu-system-x86_64"


def default_helper_dirs() -> list[Path]:
    """Standard locations for hypervisor helper binaries on this host."""
    match detect_host_os():
        case HostOS.MACOS:
            return [Path("/opt/podman/bin"), Path("/opt/homebrew/bin"), Path("/usr/local/bin")]
        case HostOS.LINUX:
            return [Path("/usr/local/libexec/podman"), Path("/usr/libexec/podman"), Path("/usr/lib/podman")]
        case _:
            return []
