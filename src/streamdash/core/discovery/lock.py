"""
Server discovery and lock management.

At most one streamdash API server should serve a project at a time, even
when several processes are started independently. Coordination uses a
lock file at a well-known per-project path:

    {"pid": 4242, "port": 3517, "projectRoot": "/work/app",
     "projectName": "app", "startedAt": "...", "runtimeVersion": "python-3.12.1"}

Discovery trusts a lock only after re-validating it: the pid must be
alive and (optionally) the server must answer GET /health. Anything else
is a stale lock left by a crash, and is removed.

This is best-effort mutual exclusion on a single host, not a lease: two
processes can both see "absent" at the same moment. The listening socket
is the tie-breaker; whoever fails to bind has lost the race and retries
discovery.
"""

import atexit
import logging
import os
import platform
import signal
import socket
import tempfile
import threading
import zlib
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from types import FrameType
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from streamdash.core.db.models import utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_BASE_PORT = 3001
DEFAULT_PORT_SPAN = 1000
MAX_PORT = 65535


class DiscoveryError(Exception):
    """Base exception for discovery and claiming."""

    pass


class PortUnavailableError(DiscoveryError):
    """Raised when no port in the probed range can be bound."""

    pass


class ClaimError(DiscoveryError):
    """Raised when claiming the server role fails (the race was lost)."""

    pass


class ServerLock(BaseModel):
    """Contents of the lock file. Serialized with camelCase keys."""

    pid: int = Field(..., description="Process id of the server")
    port: int = Field(..., ge=1, le=MAX_PORT, description="Port the server listens on")
    project_root: str = Field(..., alias="projectRoot")
    project_name: str = Field(..., alias="projectName")
    started_at: str = Field(default_factory=utc_now_iso, alias="startedAt")
    runtime_version: str = Field(
        default_factory=lambda: f"python-{platform.python_version()}", alias="runtimeVersion"
    )

    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    def matches(self, project_root: Path | str, project_name: str) -> bool:
        """Whether this lock belongs to the given project."""
        return (
            os.path.realpath(self.project_root) == os.path.realpath(str(project_root))
            and self.project_name == project_name
        )


@dataclass
class DiscoveryResult:
    """
    Outcome of discover().

    existing=True means a live server already serves the project on
    `port`; otherwise `port` is a free port this process may claim.
    """

    port: int
    existing: bool
    lock: ServerLock | None = None
    removed_stale: bool = False


@dataclass
class ClaimedServer:
    """A claimed server role: the bound socket plus the lock written for it."""

    sock: socket.socket
    port: int
    lock: ServerLock
    lock_path: Path


# ----------------------------------------------------------------------------
# Lock file
# ----------------------------------------------------------------------------


def read_lock(lock_path: Path) -> ServerLock | None:
    """
    Read the lock file.

    Returns:
        The lock, or None if there is none or it cannot be parsed
    """
    try:
        content = Path(lock_path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("Failed to read lock file %s: %s", lock_path, e)
        return None

    try:
        return ServerLock.model_validate_json(content)
    except ValidationError as e:
        logger.warning("Ignoring unreadable lock file %s: %s", lock_path, e)
        return None


def write_lock(lock_path: Path, lock: ServerLock) -> None:
    """
    Write the lock file atomically.

    The record is written to a temporary file in the same directory and
    moved into place, so readers never see a partial record.
    """
    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=".lock-", dir=str(lock_path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(lock.to_json())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, lock_path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def remove_lock(lock_path: Path, pid: int | None = None) -> bool:
    """
    Remove the lock file.

    Args:
        lock_path: Lock file location
        pid: Only remove the lock if it names this pid

    Returns:
        True if a lock file was removed
    """
    lock_path = Path(lock_path)
    if pid is not None:
        lock = read_lock(lock_path)
        if lock is not None and lock.pid != pid:
            logger.debug("Lock at %s belongs to pid %d; leaving it", lock_path, lock.pid)
            return False
    try:
        lock_path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning("Failed to remove lock file %s: %s", lock_path, e)
        return False
    return True


# ----------------------------------------------------------------------------
# Liveness
# ----------------------------------------------------------------------------


def is_process_alive(pid: int) -> bool:
    """
    Check whether a process exists, without signalling it.

    A process owned by another user (EPERM) counts as alive.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def probe_server(host: str, port: int, timeout: float = 2.0) -> bool:
    """Whether a server answers GET /health with 200 on host:port."""
    try:
        response = httpx.get(f"http://{host}:{port}/health", timeout=timeout)
    except httpx.HTTPError as e:
        logger.debug("Health probe of %s:%d failed: %s", host, port, e)
        return False
    return response.status_code == 200


# ----------------------------------------------------------------------------
# Ports
# ----------------------------------------------------------------------------


def preferred_port(
    project_root: Path | str,
    project_name: str,
    base_port: int = DEFAULT_BASE_PORT,
    span: int = DEFAULT_PORT_SPAN,
) -> int:
    """
    Deterministic per-project port.

    Different projects usually land on different ports, so their servers
    rarely compete for the same one.

    Example:
        >>> preferred_port("/work/app", "app") == preferred_port("/work/app", "app")
        True
    """
    span = max(1, min(span, MAX_PORT - base_port + 1))
    key = f"{os.path.realpath(str(project_root))}:{project_name}".encode()
    return base_port + zlib.crc32(key) % span


def create_listen_socket(host: str, port: int) -> socket.socket:
    """
    Bind a listening TCP socket.

    Raises:
        OSError: If the address cannot be bound
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


def is_port_available(host: str, port: int) -> bool:
    try:
        sock = create_listen_socket(host, port)
    except OSError:
        return False
    sock.close()
    return True


def find_available_port(host: str, start_port: int, max_attempts: int = 10) -> int:
    """
    Probe forward from start_port for a bindable port.

    Raises:
        PortUnavailableError: If none of the max_attempts ports is free
    """
    last = min(start_port + max_attempts - 1, MAX_PORT)
    for port in range(start_port, last + 1):
        if is_port_available(host, port):
            return port
    raise PortUnavailableError(f"No available ports found in range {start_port}-{last}")


# ----------------------------------------------------------------------------
# Discover / claim
# ----------------------------------------------------------------------------


def discover(
    lock_path: Path,
    project_root: Path | str,
    project_name: str,
    *,
    port: int | None = None,
    host: str = "127.0.0.1",
    base_port: int = DEFAULT_BASE_PORT,
    port_span: int = DEFAULT_PORT_SPAN,
    port_attempts: int = 10,
    probe: bool = True,
    probe_timeout: float = 2.0,
) -> DiscoveryResult:
    """
    Find the live server of a project, or a port for a new one.

    Args:
        lock_path: Lock file location
        project_root: Project the server must belong to
        project_name: Project name the server must belong to
        port: Fixed port to start probing at (defaults to the per-project port)
        host: Interface to probe and bind
        base_port: Lowest port of the per-project range
        port_span: Size of the per-project range
        port_attempts: Ports probed forward when the first choice is taken
        probe: Also require GET /health to answer before trusting a live pid
        probe_timeout: Timeout of the health probe

    Returns:
        DiscoveryResult

    Raises:
        PortUnavailableError: If no server exists and no port is free
    """
    lock = read_lock(lock_path)
    removed_stale = False

    if lock is not None:
        if not lock.matches(project_root, project_name):
            logger.info(
                "Lock at %s belongs to %s (%s); treating as absent",
                lock_path,
                lock.project_name,
                lock.project_root,
            )
        elif not is_process_alive(lock.pid):
            logger.info("Process %d is dead, cleaning up stale lock", lock.pid)
            removed_stale = remove_lock(lock_path)
        elif probe and not probe_server(host, lock.port, probe_timeout):
            logger.info("Server on port %d not responding, cleaning up stale lock", lock.port)
            removed_stale = remove_lock(lock_path)
        else:
            logger.info(
                "Found existing server for %s on port %d (pid %d)",
                project_name,
                lock.port,
                lock.pid,
            )
            return DiscoveryResult(port=lock.port, existing=True, lock=lock)

    start = port if port is not None else preferred_port(
        project_root, project_name, base_port, port_span
    )
    chosen = find_available_port(host, start, port_attempts)
    logger.info("No existing server for %s, will use port %d", project_name, chosen)
    return DiscoveryResult(port=chosen, existing=False, removed_stale=removed_stale)


def claim(
    lock_path: Path,
    port: int,
    project_root: Path | str,
    project_name: str,
    *,
    host: str = "127.0.0.1",
) -> ClaimedServer:
    """
    Claim the server role: bind the port, then write the lock.

    Raises:
        ClaimError: If the port cannot be bound, or another live process
            wrote a lock for this project in the meantime
    """
    try:
        sock = create_listen_socket(host, port)
    except OSError as e:
        raise ClaimError(f"Could not bind {host}:{port}: {e}") from e

    pid = os.getpid()
    current = read_lock(lock_path)
    if (
        current is not None
        and current.pid != pid
        and current.matches(project_root, project_name)
        and is_process_alive(current.pid)
    ):
        sock.close()
        raise ClaimError(
            f"Process {current.pid} claimed {project_name} on port {current.port} first"
        )

    lock = ServerLock(
        pid=pid,
        port=port,
        project_root=os.path.realpath(str(project_root)),
        project_name=project_name,
    )
    try:
        write_lock(lock_path, lock)
    except OSError as e:
        sock.close()
        raise ClaimError(f"Could not write lock file {lock_path}: {e}") from e

    logger.info("Claimed %s on port %d (pid %d)", project_name, port, pid)
    return ClaimedServer(sock=sock, port=port, lock=lock, lock_path=Path(lock_path))


def install_shutdown_handlers(lock_path: Path, pid: int | None = None) -> Callable[[], None]:
    """
    Remove the lock on normal exit and on SIGTERM/SIGINT.

    Signal handlers chain to whatever handler was installed before.
    The lock is only removed while it still names this process.

    Returns:
        The cleanup function (idempotent)
    """
    owner = pid if pid is not None else os.getpid()
    done = False

    def cleanup() -> None:
        nonlocal done
        if done:
            return
        done = True
        if remove_lock(lock_path, pid=owner):
            logger.info("Removed server lock %s", lock_path)

    atexit.register(cleanup)

    if threading.current_thread() is not threading.main_thread():
        logger.debug("Not in main thread; signal handlers not installed")
        return cleanup

    for signum in (signal.SIGTERM, signal.SIGINT):
        previous = signal.getsignal(signum)

        def handler(
            received: int, frame: FrameType | None, _previous: Any = previous
        ) -> None:
            cleanup()
            if callable(_previous):
                _previous(received, frame)
            elif _previous == signal.SIG_DFL:
                signal.signal(received, signal.SIG_DFL)
                os.kill(os.getpid(), received)

        signal.signal(signum, handler)

    return cleanup
