"""
Single-server-per-project coordination through a lock file.
"""

from streamdash.core.discovery.lock import (
    ClaimedServer,
    ClaimError,
    DiscoveryError,
    DiscoveryResult,
    PortUnavailableError,
    ServerLock,
    claim,
    discover,
    find_available_port,
    install_shutdown_handlers,
    is_process_alive,
    preferred_port,
    read_lock,
    remove_lock,
    write_lock,
)

__all__ = [
    "ClaimError",
    "ClaimedServer",
    "DiscoveryError",
    "DiscoveryResult",
    "PortUnavailableError",
    "ServerLock",
    "claim",
    "discover",
    "find_available_port",
    "install_shutdown_handlers",
    "is_process_alive",
    "preferred_port",
    "read_lock",
    "remove_lock",
    "write_lock",
]
