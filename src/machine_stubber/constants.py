"""Constants for machine-stubber defaults and fixed protocol parameters."""

from typing import Final

# ============================================================================
# Socket synchronization
# ============================================================================

READY_MAX_ATTEMPTS: Final[int] = 6
"""Connect attempts against the guest readiness socket."""

READY_ATTEMPT_DELAY_SECONDS: Final[float] = 0.5
"""Fixed delay between readiness connect attempts."""

GVPROXY_MAX_ATTEMPTS: Final[int] = 6
"""Connect attempts against the network proxy control socket."""

GVPROXY_ATTEMPT_DELAY_SECONDS: Final[float] = 0.5
"""Fixed delay between proxy connect attempts."""

# ============================================================================
# Hypervisor
# ============================================================================

QEMU_IMG_BINARY: Final[str] = "qemu-img"
VFKIT_BINARY: Final[str] = "vfkit"
GVPROXY_BINARY: Final[str] = "gvproxy"

QMP_MONITOR_TIMEOUT_SECONDS: Final[float] = 2.0
"""Timeout for a single QMP connect/command."""

STOP_TIMEOUT_SECONDS: Final[float] = 30.0
"""How long stop_vm waits for the hypervisor to exit after powerdown."""

STDERR_MAX_BYTES: Final[int] = 64 * 1024
"""Upper bound on captured hypervisor stderr kept for diagnostics."""

GUEST_MAC_ADDRESS: Final[str] = "5a:94:ef:e4:0c:ee"
"""MAC address the network proxy expects for the guest NIC."""

IGNITION_FW_CFG_NAME: Final[str] = "opt/com.coreos/config"

READY_PORT_NAME: Final[str] = "org.fedoraproject.port.0"
"""virtio-serial port name the guest writes its ready line to."""

READY_VSOCK_PORT: Final[int] = 1025

# ============================================================================
# Shared directories
# ============================================================================

NINEP_MOUNT_OPTIONS: Final[str] = "version=9p2000.L,msize=131072,cache=mmap"
"""9p protocol version, buffer size and caching mode for guest mounts."""

NINEP_TRANSPORT: Final[str] = "trans=virtio"

DEFAULT_SECURITY_MODEL: Final[str] = "none"

WRITABLE_ROOT_PREFIXES: Final[tuple[str, ...]] = ("/home", "/mnt")
"""Mount targets under these prefixes do not need the root immutability toggle."""
