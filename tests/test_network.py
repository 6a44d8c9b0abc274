"""Tests for gvproxy coordination in network.py."""

import logging
from pathlib import Path

import pytest

from machine_stubber.exceptions import NetworkProxyUnavailableError, SocketWaitTimeoutError
from machine_stubber.models import BackoffPolicy
from machine_stubber.network import GVPROXY_POLICY, GvproxyCommand, await_proxy_ready, gvproxy_cmdline, prepare_proxy
from machine_stubber.settings import Settings
from tests.conftest import make_executable

FAST = BackoffPolicy(attempts=3, delay=0.01)


class TestGvproxyCommand:
    def test_cmdline(self) -> None:
        cmd = GvproxyCommand(ssh_port=2222, pid_file=Path("/run/gv.pid"))
        cmd.add_endpoint("unix:///run/api.sock")
        cmd.add_qemu_socket("unix:///run/vm1-gvproxy.sock")

        assert cmd.to_cmdline("/usr/bin/gvproxy") == [
            "/usr/bin/gvproxy",
            "-listen",
            "unix:///run/api.sock",
            "-listen-qemu",
            "unix:///run/vm1-gvproxy.sock",
            "-ssh-port",
            "2222",
            "-pid-file",
            "/run/gv.pid",
        ]

    def test_debug_flag(self) -> None:
        assert GvproxyCommand(debug=True).to_cmdline("gvproxy")[-1] == "-debug"

    def test_resolves_binary(self, settings: Settings, bin_dir: Path) -> None:
        gvproxy = make_executable(bin_dir, "gvproxy")
        assert gvproxy_cmdline(GvproxyCommand(), settings) == [str(gvproxy)]

    def test_default_policy(self) -> None:
        assert GVPROXY_POLICY.attempts == 6
        assert GVPROXY_POLICY.delay == 0.5


class TestPrepareProxy:
    async def test_registers_qemu_socket(self, machine_config) -> None:
        cmd = GvproxyCommand()
        await prepare_proxy(machine_config, cmd)

        expected = f"unix://{machine_config.runtime_dir}/vm1-gvproxy.sock"
        assert cmd.sockets == {"listen-qemu": expected}

    async def test_registers_vfkit_socket(self, machine_config) -> None:
        cmd = GvproxyCommand()
        await prepare_proxy(machine_config, cmd, scheme="unixgram")

        assert cmd.sockets == {"listen-vfkit": f"unixgram://{machine_config.runtime_dir}/vm1-gvproxy.sock"}

    async def test_removes_stale_socket(self, machine_config) -> None:
        stale = machine_config.gvproxy_socket().get_path()
        stale.write_text("")

        await prepare_proxy(machine_config, GvproxyCommand())

        assert not stale.exists()

    async def test_stale_removal_failure_is_logged(self, machine_config, caplog: pytest.LogCaptureFixture) -> None:
        # A directory cannot be removed with remove(): OSError, which must not escape
        blocker = machine_config.gvproxy_socket().get_path()
        blocker.mkdir()
        (blocker / "keep").write_text("")
        cmd = GvproxyCommand()

        with caplog.at_level(logging.ERROR, logger="machine_stubber.network"):
            await prepare_proxy(machine_config, cmd)

        assert "listen-qemu" in cmd.sockets
        assert any("stale gvproxy socket" in r.message for r in caplog.records)


class TestAwaitProxyReady:
    async def test_ready(self, machine_config, line_server) -> None:
        await line_server(machine_config.gvproxy_socket().get_path()).start()
        await await_proxy_ready(machine_config, FAST)

    async def test_unavailable(self, machine_config) -> None:
        with pytest.raises(NetworkProxyUnavailableError) as exc_info:
            await await_proxy_ready(machine_config, FAST)

        assert isinstance(exc_info.value, SocketWaitTimeoutError)
        assert exc_info.value.context["machine"] == "vm1"
        assert exc_info.value.context["attempts"] == 3
