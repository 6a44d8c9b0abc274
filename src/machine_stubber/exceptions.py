"""Exception hierarchy for machine-stubber.

All exceptions inherit from StubberError.

Hierarchy:
    StubberError (base)
    ├── TransientError (may succeed if the operation is repeated)
    │   ├── SocketWaitTimeoutError          ← backoff attempts exhausted
    │   │   ├── ReadinessTimeoutError       ← guest never signalled boot
    │   │   └── NetworkProxyUnavailableError ← proxy socket never reachable
    │   └── GuestReadError                  ← connected, ready line never delivered
    └── PermanentError
        ├── BinaryNotFoundError             ← helper binary lookup failed
        ├── ProcessLaunchError              ← hypervisor could not be spawned
        ├── ProcessDiedError                ← hypervisor exited while we waited
        ├── InvalidStateTransitionError     ← operation not allowed in current state
        ├── VmConfigError                   ← malformed machine configuration
        │   ├── CommandBuildError           ← socket/file handle without a path
        │   └── UnsupportedMountTypeError   ← mount pass rejected up front
        ├── DiskResizeError                 ← resize utility failed
        ├── RemoteCommandError              ← in-guest command failed
        └── MonitorError                    ← hypervisor monitor (QMP) failure
"""

from __future__ import annotations

from typing import Any


class StubberError(Exception):
    """Base exception for all machine-stubber errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(StubberError):
    """Base for errors where repeating the whole operation may succeed."""


class PermanentError(StubberError):
    """Base for errors that need a configuration or environment change."""


# =============================================================================
# Socket synchronization
# =============================================================================


class SocketWaitTimeoutError(TransientError):
    """All backoff attempts against a socket were exhausted.

    The monitored process (if any) was still alive at the end of the wait.
    """


class ReadinessTimeoutError(SocketWaitTimeoutError):
    """Guest never opened the readiness socket within the backoff budget."""


class NetworkProxyUnavailableError(SocketWaitTimeoutError):
    """Network proxy never published a connectable control socket."""


class GuestReadError(TransientError):
    """Connected to the readiness socket but no terminated line arrived."""


class ProcessDiedError(PermanentError):
    """Supervised process exited while a socket wait was in progress.

    Distinct from a timeout: the wait was aborted as soon as the process
    was seen dead.

    Attributes:
        diagnostics: Captured process output (typically stderr)
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        diagnostics: str = "",
    ):
        super().__init__(message, context)
        self.diagnostics = diagnostics

    def __str__(self) -> str:
        if self.diagnostics:
            return f"{self.message}: {self.diagnostics}"
        return self.message


# =============================================================================
# Process launch
# =============================================================================


class BinaryNotFoundError(PermanentError):
    """Helper binary could not be located in the helper dirs or on PATH."""


class ProcessLaunchError(PermanentError):
    """Hypervisor process could not be started.

    Context always carries the attempted command line.
    """


# =============================================================================
# State and configuration
# =============================================================================


class InvalidStateTransitionError(PermanentError):
    """Operation is not permitted in the VM's current state."""


class VmConfigError(PermanentError):
    """Machine configuration is malformed or names an unavailable backend."""


class CommandBuildError(VmConfigError):
    """A socket or file handle referenced by the command line has no path."""


class UnsupportedMountTypeError(VmConfigError):
    """A mount uses a type the active backend cannot provision."""


# =============================================================================
# External tools
# =============================================================================


class DiskResizeError(PermanentError):
    """Disk resize utility failed.

    Attributes:
        stderr: Standard error output from the utility (if available)
        returncode: Exit status (None if the utility never ran)
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        stderr: str = "",
        returncode: int | None = None,
    ):
        super().__init__(message, context)
        self.stderr = stderr
        self.returncode = returncode


class RemoteCommandError(PermanentError):
    """Command executed inside the guest failed."""


class MonitorError(PermanentError):
    """Hypervisor monitor (QMP) connection or command failed."""
