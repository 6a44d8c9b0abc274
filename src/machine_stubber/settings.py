"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from machine_stubber import constants
from machine_stubber.models import BackoffPolicy
from machine_stubber.platform_utils import default_helper_dirs, default_qemu_binary


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with MACHINE_STUBBER_ prefix.
    Example: MACHINE_STUBBER_READY_ATTEMPTS=10
    """

    model_config = SettingsConfigDict(
        env_prefix="MACHINE_STUBBER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Helper binary lookup: searched in order before falling back to PATH
    helper_binaries_dir: list[Path] = Field(default_factory=default_helper_dirs)

    # Binaries (logical names resolved through helper_binaries_dir / PATH)
    qemu_binary: str = Field(default_factory=default_qemu_binary)
    qemu_img_binary: str = constants.QEMU_IMG_BINARY
    vfkit_binary: str = constants.VFKIT_BINARY
    gvproxy_binary: str = constants.GVPROXY_BINARY

    # Guest readiness wait
    ready_attempts: int = Field(default=constants.READY_MAX_ATTEMPTS, gt=0)
    ready_delay: float = Field(default=constants.READY_ATTEMPT_DELAY_SECONDS, gt=0)

    # Network proxy wait
    gvproxy_attempts: int = Field(default=constants.GVPROXY_MAX_ATTEMPTS, gt=0)
    gvproxy_delay: float = Field(default=constants.GVPROXY_ATTEMPT_DELAY_SECONDS, gt=0)

    # Diagnostics
    stderr_max_bytes: int = Field(default=constants.STDERR_MAX_BYTES, gt=0)

    # Shutdown
    stop_timeout: float = Field(default=constants.STOP_TIMEOUT_SECONDS, gt=0)

    def ready_policy(self) -> BackoffPolicy:
        """Backoff schedule for the guest readiness socket."""
        return BackoffPolicy(attempts=self.ready_attempts, delay=self.ready_delay)

    def gvproxy_policy(self) -> BackoffPolicy:
        """Backoff schedule for the network proxy socket."""
        return BackoffPolicy(attempts=self.gvproxy_attempts, delay=self.gvproxy_delay)
