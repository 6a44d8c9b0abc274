"""User-mode network proxy (gvproxy) coordination.

gvproxy itself is started by the caller. This module prepares its startup
configuration with the socket the hypervisor NIC will attach to, and
blocks the start sequence until the proxy has published that socket.
Ordering: await_proxy_ready() must return before the hypervisor is
launched, otherwise the hypervisor fails to attach its network device.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field

from machine_stubber import constants
from machine_stubber._logging import get_logger
from machine_stubber.exceptions import NetworkProxyUnavailableError, SocketWaitTimeoutError
from machine_stubber.helper_binaries import find_helper_binary
from machine_stubber.models import BackoffPolicy, MachineConfig
from machine_stubber.platform_utils import to_slash
from machine_stubber.settings import Settings
from machine_stubber.sockets import wait_for_socket_with_backoff

logger = get_logger(__name__)

GVPROXY_POLICY = BackoffPolicy(
    attempts=constants.GVPROXY_MAX_ATTEMPTS,
    delay=constants.GVPROXY_ATTEMPT_DELAY_SECONDS,
)


class GvproxyCommand(BaseModel):
    """Startup configuration for the gvproxy process."""

    endpoints: list[str] = Field(default_factory=list)
    sockets: dict[str, str] = Field(default_factory=dict)
    ssh_port: int | None = None
    pid_file: Path | None = None
    debug: bool = False

    def add_endpoint(self, url: str) -> None:
        self.endpoints.append(url)

    def add_qemu_socket(self, url: str) -> None:
        self.sockets["listen-qemu"] = url

    def add_vfkit_socket(self, url: str) -> None:
        self.sockets["listen-vfkit"] = url

    def to_cmdline(self, binary: str | Path) -> list[str]:
        """gvproxy argv, flags sorted for a stable command line."""
        args = [str(binary)]
        for endpoint in self.endpoints:
            args.extend(["-listen", endpoint])
        for flag in sorted(self.sockets):
            args.extend([f"-{flag}", self.sockets[flag]])
        if self.ssh_port is not None:
            args.extend(["-ssh-port", str(self.ssh_port)])
        if self.pid_file is not None:
            args.extend(["-pid-file", str(self.pid_file)])
        if self.debug:
            args.append("-debug")
        return args


def gvproxy_cmdline(cmd: GvproxyCommand, settings: Settings) -> list[str]:
    """gvproxy argv with the binary resolved through the helper dirs.

    Raises:
        BinaryNotFoundError: gvproxy not found
    """
    return cmd.to_cmdline(find_helper_binary(settings.gvproxy_binary, settings))


async def prepare_proxy(mc: MachineConfig, cmd: GvproxyCommand, *, scheme: str = "unix") -> None:
    """Register the hypervisor's socket endpoint with the proxy's configuration.

    A socket left behind by a crashed previous run is removed first; failure
    to remove it is logged and otherwise ignored.

    Args:
        mc: Machine whose proxy socket is being set up
        cmd: Proxy startup configuration to update
        scheme: "unix" for stream sockets (QEMU), "unixgram" for datagram (vfkit)
    """
    socket = mc.gvproxy_socket()
    try:
        await socket.delete()
    except OSError as e:
        logger.error(
            "Failed to remove stale gvproxy socket",
            extra={"machine": mc.name, "socket": str(socket.path), "error": str(e)},
        )

    url = f"{scheme}://{to_slash(socket.get_path())}"
    if scheme == "unixgram":
        cmd.add_vfkit_socket(url)
    else:
        cmd.add_qemu_socket(url)
    logger.debug("Registered hypervisor socket with gvproxy", extra={"machine": mc.name, "url": url})


async def await_proxy_ready(
    mc: MachineConfig,
    policy: BackoffPolicy = GVPROXY_POLICY,
    *,
    datagram: bool = False,
) -> None:
    """Block until the proxy's socket accepts connections.

    Raises:
        NetworkProxyUnavailableError: Socket never became connectable
    """
    path = mc.gvproxy_socket().get_path()
    try:
        await wait_for_socket_with_backoff(path, policy, name="gvproxy", datagram=datagram)
    except SocketWaitTimeoutError as e:
        raise NetworkProxyUnavailableError(
            f"network proxy not available: {e.message}",
            context={"machine": mc.name, **e.context},
        ) from e
