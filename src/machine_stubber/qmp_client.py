"""QMP (QEMU Monitor Protocol) client for VM shutdown and status.

Thin async wrapper around qemu.qmp. The monitor socket is opened by QEMU
itself (server=on,wait=off) so it is only connectable while QEMU runs.
"""

import asyncio
import types
from pathlib import Path
from typing import Any

from qemu.qmp import ExecInterruptedError, QMPClient, QMPError  # type: ignore[import-untyped]

from machine_stubber._logging import get_logger
from machine_stubber.exceptions import MonitorError

_logger = get_logger(__name__)


class QMPMonitorClient:
    """Async QMP client for QEMU control.

    Usage:
        async with QMPMonitorClient(socket_path) as qmp:
            await qmp.system_powerdown()
    """

    def __init__(self, socket_path: str | Path, timeout: float = 2.0):
        """Initialize QMP client.

        Args:
            socket_path: Path to QEMU QMP Unix socket.
            timeout: Default per-command timeout in seconds.
        """
        self._socket_path = str(socket_path)
        self._timeout = timeout
        self._client: QMPClient | None = None

    async def __aenter__(self) -> "QMPMonitorClient":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """Connect to QMP socket.

        Raises:
            MonitorError: If connection fails or times out.
        """
        self._client = QMPClient("machine-stubber")
        try:
            await asyncio.wait_for(self._client.connect(self._socket_path), timeout=self._timeout)
            _logger.debug("Connected to QMP socket", extra={"socket": self._socket_path})
        except TimeoutError as e:
            await self._cleanup_client()
            msg = f"QMP connection timed out after {self._timeout}s"
            raise MonitorError(msg, {"socket": self._socket_path}) from e
        except (OSError, QMPError) as e:
            await self._cleanup_client()
            msg = f"QMP connection failed: {e}"
            raise MonitorError(msg, {"socket": self._socket_path}) from e

    async def disconnect(self) -> None:
        """Disconnect from QMP socket. Safe to call multiple times."""
        await self._cleanup_client()

    async def _cleanup_client(self) -> None:
        if self._client is not None:
            try:
                await self._client.disconnect()
            except Exception:  # noqa: BLE001 - Best effort cleanup
                _logger.debug("QMP disconnect error (ignored)", exc_info=True)
            finally:
                self._client = None

    async def _execute(self, command: str, arguments: dict[str, Any] | None = None) -> Any:
        if self._client is None:
            raise MonitorError("QMP client not connected", {"socket": self._socket_path, "command": command})
        try:
            return await asyncio.wait_for(self._client.execute(command, arguments), timeout=self._timeout)
        except TimeoutError as e:
            msg = f"QMP {command} timed out after {self._timeout}s"
            raise MonitorError(msg, {"socket": self._socket_path, "command": command}) from e
        except QMPError as e:
            msg = f"QMP {command} failed: {e}"
            raise MonitorError(msg, {"socket": self._socket_path, "command": command}) from e

    async def query_status(self) -> str:
        """Run state as reported by QEMU (e.g. "running", "paused", "shutdown")."""
        result = await self._execute("query-status")
        return str(result.get("status", "unknown"))

    async def system_powerdown(self) -> None:
        """Ask the guest to shut down (ACPI power button)."""
        await self._execute("system_powerdown")
        _logger.debug("Sent system_powerdown", extra={"socket": self._socket_path})

    async def quit(self) -> None:
        """Terminate QEMU immediately.

        QEMU may drop the connection before replying; that counts as success.
        """
        try:
            await self._execute("quit")
        except MonitorError as e:
            if not isinstance(e.__cause__, ExecInterruptedError):
                raise
        _logger.debug("Sent quit", extra={"socket": self._socket_path})
