"""Guest-side shared-directory mounting.

Mount points are created and mounted by commands run inside the guest
through a RemoteExecutor supplied by the caller. Fedora CoreOS style
guests keep / immutable, so creating a directory outside the writable
trees needs the immutable bit lifted around the mkdir; that workaround is
a pluggable RootImmutabilityPolicy.
"""

from __future__ import annotations

import asyncio
import shlex
from collections.abc import Iterable, Sequence
from typing import Protocol

import click

from machine_stubber import constants
from machine_stubber._logging import get_logger
from machine_stubber.exceptions import RemoteCommandError, UnsupportedMountTypeError
from machine_stubber.models import MountSpec, MountType, SSHConfig

logger = get_logger(__name__)


class RemoteExecutor(Protocol):
    """Runs one command inside the guest.

    Implementations raise (typically RemoteCommandError) when the command
    cannot be delivered or exits non-zero.
    """

    async def run(self, args: Sequence[str]) -> str: ...


class SSHRemoteExecutor:
    """RemoteExecutor over the system ssh client, against the forwarded guest port."""

    def __init__(
        self,
        ssh: SSHConfig,
        name: str,
        *,
        host: str = "localhost",
        ssh_binary: str = "ssh",
    ) -> None:
        self._ssh = ssh
        self._name = name
        self._host = host
        self._ssh_binary = ssh_binary

    def base_args(self) -> list[str]:
        return [
            self._ssh_binary,
            "-i",
            str(self._ssh.identity_path),
            "-p",
            str(self._ssh.port),
            "-o",
            "IdentitiesOnly=yes",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            "LogLevel=ERROR",
            f"{self._ssh.remote_username}@{self._host}",
            "-q",
            "--",
        ]

    async def run(self, args: Sequence[str]) -> str:
        argv = [*self.base_args(), *args]
        logger.debug("Running guest command", extra={"machine": self._name, "command": shlex.join(args)})
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except OSError as e:
            raise RemoteCommandError(
                f"unable to run ssh: {e}",
                context={"machine": self._name, "command": list(args)},
            ) from e

        if proc.returncode != 0:
            raise RemoteCommandError(
                f"guest command failed with exit code {proc.returncode}: {stderr.decode(errors='replace').strip()}",
                context={"machine": self._name, "command": list(args), "returncode": proc.returncode},
            )
        return stdout.decode(errors="replace")


class RootImmutabilityPolicy(Protocol):
    """Turns a mkdir command into one that works under the guest's root policy."""

    def wrap_mkdir(self, target: str, mkdir_args: list[str]) -> list[str]: ...


class ChattrRootPolicy:
    """Lift the immutable attribute on / around a mkdir outside the writable prefixes."""

    def __init__(self, writable_prefixes: Iterable[str] = constants.WRITABLE_ROOT_PREFIXES) -> None:
        self.writable_prefixes = tuple(writable_prefixes)

    def wrap_mkdir(self, target: str, mkdir_args: list[str]) -> list[str]:
        if target.startswith(self.writable_prefixes):
            return list(mkdir_args)
        return ["sudo", "chattr", "-i", "/", ";", *mkdir_args, ";", "sudo", "chattr", "+i", "/", ";"]


class NoopRootPolicy:
    """For guests with a writable root."""

    def wrap_mkdir(self, target: str, mkdir_args: list[str]) -> list[str]:
        return list(mkdir_args)


def mount_command(mount: MountSpec) -> list[str]:
    """Guest command mounting one share at its target."""
    if mount.type == MountType.NINEP.value:
        args = [
            "sudo",
            "mount",
            "-t",
            "9p",
            "-o",
            constants.NINEP_TRANSPORT,
            mount.tag,
            mount.target,
            "-o",
            constants.NINEP_MOUNT_OPTIONS,
        ]
    elif mount.type == MountType.VIRTIOFS.value:
        args = ["sudo", "mount", "-t", "virtiofs", mount.tag, mount.target]
    else:
        raise UnsupportedMountTypeError(f"unknown mount type: {mount.type}", {"target": mount.target})
    if mount.read_only:
        args.extend(["-o", "ro"])
    return args


async def mount_all(
    mounts: Sequence[MountSpec],
    executor: RemoteExecutor,
    *,
    supported: Iterable[MountType | str],
    policy: RootImmutabilityPolicy | None = None,
    quiet: bool = False,
) -> None:
    """Create each mount point and mount its share, in list order.

    Every mount type is checked before the first remote command, so an
    unsupported entry leaves the guest untouched. Remote failures
    propagate; mounts completed before the failure stay in place.

    Raises:
        UnsupportedMountTypeError: A mount's type is not in supported
    """
    allowed = {t.value if isinstance(t, MountType) else t for t in supported}
    for mount in mounts:
        if mount.type not in allowed:
            raise UnsupportedMountTypeError(
                f"unknown mount type: {mount.type}",
                context={"source": mount.source, "target": mount.target, "supported": sorted(allowed)},
            )

    policy = policy or ChattrRootPolicy()
    for mount in mounts:
        if not quiet:
            click.echo(f"Mounting volume... {mount.source}:{mount.target}")
        await executor.run(policy.wrap_mkdir(mount.target, ["sudo", "mkdir", "-p", mount.target]))
        await executor.run(mount_command(mount))
        logger.debug("Mounted volume", extra={"tag": mount.tag, "target": mount.target, "type": mount.type})
