"""Tests for guest-side mounting in mounts.py."""

import pytest

from machine_stubber.exceptions import RemoteCommandError, UnsupportedMountTypeError
from machine_stubber.models import MountSpec, MountType, SSHConfig
from machine_stubber.mounts import ChattrRootPolicy, NoopRootPolicy, SSHRemoteExecutor, mount_all, mount_command
from tests.conftest import RecordingExecutor, mount

NINEP = [MountType.NINEP]


class TestMountAll:
    async def test_home_target_needs_no_chattr(self, executor: RecordingExecutor) -> None:
        spec = MountSpec(source="/src", target="/home/user/data", tag="tag0", read_only=False, type="9p")

        await mount_all([spec], executor, supported=NINEP, quiet=True)

        assert executor.commands == [
            ["sudo", "mkdir", "-p", "/home/user/data"],
            [
                "sudo",
                "mount",
                "-t",
                "9p",
                "-o",
                "trans=virtio",
                "tag0",
                "/home/user/data",
                "-o",
                "version=9p2000.L,msize=131072,cache=mmap",
            ],
        ]

    async def test_root_target_wraps_mkdir_in_chattr(self, executor: RecordingExecutor) -> None:
        await mount_all([mount("/data")], executor, supported=NINEP, quiet=True)

        mkdir = executor.commands[0]
        assert mkdir == [
            "sudo", "chattr", "-i", "/", ";",
            "sudo", "mkdir", "-p", "/data",
            ";", "sudo", "chattr", "+i", "/", ";",
        ]  # fmt: skip
        assert mkdir.index("-i") < mkdir.index("mkdir") < mkdir.index("+i")

    async def test_mnt_target_needs_no_chattr(self, executor: RecordingExecutor) -> None:
        await mount_all([mount("/mnt/share")], executor, supported=NINEP, quiet=True)
        assert "chattr" not in executor.commands[0]

    async def test_read_only(self, executor: RecordingExecutor) -> None:
        await mount_all([mount("/mnt/ro", read_only=True)], executor, supported=NINEP, quiet=True)
        assert executor.commands[1][-2:] == ["-o", "ro"]

    async def test_virtiofs(self, executor: RecordingExecutor) -> None:
        spec = mount("/Users/me", type="virtiofs", read_only=True)
        await mount_all([spec], executor, supported=[MountType.VIRTIOFS], quiet=True)
        assert executor.commands[1] == ["sudo", "mount", "-t", "virtiofs", "vol0", "/Users/me", "-o", "ro"]

    async def test_unknown_type_issues_no_commands(self, executor: RecordingExecutor) -> None:
        mounts = [mount("/home/a", "vol0"), mount("/home/b", "vol1", type="nfs")]

        with pytest.raises(UnsupportedMountTypeError):
            await mount_all(mounts, executor, supported=NINEP, quiet=True)

        assert executor.commands == []

    async def test_type_unsupported_by_backend(self, executor: RecordingExecutor) -> None:
        with pytest.raises(UnsupportedMountTypeError):
            await mount_all([mount("/home/a", type="virtiofs")], executor, supported=NINEP, quiet=True)
        assert executor.commands == []

    async def test_order_and_stop_on_error(self) -> None:
        executor = RecordingExecutor(fail_on=3, error=RemoteCommandError("mkdir failed"))
        mounts = [mount("/home/a", "vol0"), mount("/home/b", "vol1"), mount("/home/c", "vol2")]

        with pytest.raises(RemoteCommandError):
            await mount_all(mounts, executor, supported=NINEP, quiet=True)

        # first mount completed, second failed at mkdir, third never attempted
        assert len(executor.commands) == 3
        assert executor.commands[2] == ["sudo", "mkdir", "-p", "/home/b"]

    async def test_progress_output(self, executor: RecordingExecutor, capsys: pytest.CaptureFixture[str]) -> None:
        await mount_all([mount("/home/a")], executor, supported=NINEP)
        assert "Mounting volume... /host/home/a:/home/a" in capsys.readouterr().out

    async def test_noop_policy(self, executor: RecordingExecutor) -> None:
        await mount_all([mount("/data")], executor, supported=NINEP, policy=NoopRootPolicy(), quiet=True)
        assert executor.commands[0] == ["sudo", "mkdir", "-p", "/data"]


class TestPolicies:
    def test_custom_writable_prefixes(self) -> None:
        policy = ChattrRootPolicy(writable_prefixes=("/var",))
        assert policy.wrap_mkdir("/var/x", ["mkdir", "/var/x"]) == ["mkdir", "/var/x"]
        assert policy.wrap_mkdir("/home/x", ["mkdir", "/home/x"])[0:3] == ["sudo", "chattr", "-i"]

    def test_mount_command_rejects_unknown(self) -> None:
        with pytest.raises(UnsupportedMountTypeError):
            mount_command(mount("/x", type="smb"))


class TestSSHRemoteExecutor:
    def test_base_args(self) -> None:
        executor = SSHRemoteExecutor(SSHConfig(identity_path="/keys/vm1", port=2222, remote_username="core"), "vm1")
        args = executor.base_args()

        assert args[0] == "ssh"
        assert args[args.index("-i") + 1] == "/keys/vm1"
        assert args[args.index("-p") + 1] == "2222"
        assert "core@localhost" in args
        assert args[-2:] == ["-q", "--"]

    async def test_failure_raises(self, tmp_path) -> None:
        fake_ssh = tmp_path / "ssh"
        fake_ssh.write_text("#!/bin/sh\necho 'permission denied' >&2\nexit 255\n")
        fake_ssh.chmod(0o755)
        executor = SSHRemoteExecutor(SSHConfig(), "vm1", ssh_binary=str(fake_ssh))

        with pytest.raises(RemoteCommandError) as exc_info:
            await executor.run(["true"])

        assert exc_info.value.context["returncode"] == 255
        assert "permission denied" in exc_info.value.message

    async def test_returns_stdout(self, tmp_path) -> None:
        fake_ssh = tmp_path / "ssh"
        fake_ssh.write_text('#!/bin/sh\nfor last; do :; done\necho "$last"\n')
        fake_ssh.chmod(0o755)
        executor = SSHRemoteExecutor(SSHConfig(), "vm1", ssh_binary=str(fake_ssh))

        assert await executor.run(["uname"]) == "uname\n"
