"""
Tests for server discovery and the lock file.

Tests validate:
- Lock records round-trip with camelCase keys and are written atomically
- Discovery is idempotent while the server is live
- Dead or unresponsive servers leave stale locks that discovery removes
- Claiming binds before writing and refuses a lock held by a live process
- acquire_server() retries after a lost race and gives up eventually
"""

import json
import os
import socket
from unittest.mock import patch

import pytest

from streamdash.core.api.server import acquire_server
from streamdash.core.discovery.lock import (
    ClaimError,
    DiscoveryError,
    DiscoveryResult,
    PortUnavailableError,
    ServerLock,
    claim,
    discover,
    find_available_port,
    install_shutdown_handlers,
    is_port_available,
    is_process_alive,
    preferred_port,
    read_lock,
    remove_lock,
    write_lock,
)

HOST = "127.0.0.1"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((HOST, 0))
        return sock.getsockname()[1]


@pytest.fixture
def lock_path(tmp_path):
    return tmp_path / "locks" / ".api-server.lock"


@pytest.fixture
def root(tmp_path):
    path = tmp_path / "app"
    path.mkdir()
    return path


def _live_lock(root, port, pid=None):
    return ServerLock(pid=pid or os.getpid(), port=port, project_root=str(root), project_name="app")


class TestLockFile:
    """Tests for reading, writing and removing the lock."""

    def test_round_trip_with_camel_case_keys(self, lock_path, root):
        write_lock(lock_path, _live_lock(root, 3500))

        raw = json.loads(lock_path.read_text())
        lock = read_lock(lock_path)

        assert {"pid", "port", "projectRoot", "projectName", "startedAt", "runtimeVersion"} <= set(
            raw
        )
        assert raw["runtimeVersion"].startswith("python-")
        assert lock.port == 3500
        assert lock.matches(root, "app")
        assert not lock.matches(root, "other")

    def test_unparseable_lock_reads_as_none(self, lock_path):
        lock_path.parent.mkdir(parents=True)
        lock_path.write_text("{partial")

        assert read_lock(lock_path) is None

    def test_missing_lock_reads_as_none(self, lock_path):
        assert read_lock(lock_path) is None

    def test_no_temp_files_left_behind(self, lock_path, root):
        write_lock(lock_path, _live_lock(root, 3500))

        assert [p.name for p in lock_path.parent.iterdir()] == [lock_path.name]

    def test_remove_only_own_lock(self, lock_path, root):
        write_lock(lock_path, _live_lock(root, 3500, pid=os.getpid()))

        assert remove_lock(lock_path, pid=os.getpid() + 1) is False
        assert lock_path.exists()
        assert remove_lock(lock_path, pid=os.getpid()) is True
        assert not lock_path.exists()
        assert remove_lock(lock_path) is False


class TestLiveness:
    def test_current_process_is_alive(self):
        assert is_process_alive(os.getpid()) is True

    def test_invalid_pid_is_dead(self):
        assert is_process_alive(0) is False
        assert is_process_alive(-5) is False


class TestPorts:
    def test_preferred_port_is_stable_and_in_range(self, root):
        first = preferred_port(root, "app", 3001, 1000)

        assert first == preferred_port(root, "app", 3001, 1000)
        assert 3001 <= first < 4001

    def test_find_available_port_skips_bound_port(self):
        start = _free_port()
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            busy.bind((HOST, start))
            busy.listen(1)

            chosen = find_available_port(HOST, start, 20)

        assert chosen != start

    def test_no_port_available(self):
        start = _free_port()
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind((HOST, start))
            busy.listen(1)

            with pytest.raises(PortUnavailableError):
                find_available_port(HOST, start, 1)


class TestDiscover:
    """Tests for discover()."""

    def test_no_lock_picks_free_port(self, lock_path, root):
        port = _free_port()

        result = discover(lock_path, root, "app", port=port, probe=False)

        assert result.existing is False
        assert result.port == port
        assert result.removed_stale is False

    def test_live_server_is_idempotent(self, lock_path, root):
        write_lock(lock_path, _live_lock(root, 3555))

        first = discover(lock_path, root, "app", probe=False)
        second = discover(lock_path, root, "app", probe=False)

        assert first.existing and second.existing
        assert first.port == second.port == 3555
        assert lock_path.exists()

    def test_live_server_confirmed_by_probe(self, lock_path, root):
        write_lock(lock_path, _live_lock(root, 3555))

        with patch("streamdash.core.discovery.lock.probe_server", return_value=True) as probe:
            result = discover(lock_path, root, "app", probe=True, probe_timeout=0.5)

        assert result.existing is True
        probe.assert_called_once_with(HOST, 3555, 0.5)

    def test_dead_pid_lock_is_removed(self, lock_path, root):
        write_lock(lock_path, _live_lock(root, 3555))

        with patch("streamdash.core.discovery.lock.is_process_alive", return_value=False):
            result = discover(lock_path, root, "app", port=_free_port(), probe=False)

        assert result.existing is False
        assert result.removed_stale is True
        assert not lock_path.exists()

    def test_unresponsive_server_lock_is_removed(self, lock_path, root):
        write_lock(lock_path, _live_lock(root, 3555))

        with patch("streamdash.core.discovery.lock.probe_server", return_value=False):
            result = discover(lock_path, root, "app", port=_free_port(), probe=True)

        assert result.existing is False
        assert result.removed_stale is True

    def test_other_project_lock_is_ignored(self, lock_path, root, tmp_path):
        other = tmp_path / "other"
        other.mkdir()
        write_lock(lock_path, _live_lock(other, 3555))

        result = discover(lock_path, root, "app", port=_free_port(), probe=False)

        assert result.existing is False
        assert lock_path.exists()


class TestClaim:
    """Tests for claim()."""

    def test_claim_binds_and_writes_lock(self, lock_path, root):
        port = _free_port()

        claimed = claim(lock_path, port, root, "app", host=HOST)
        try:
            lock = read_lock(lock_path)
            assert lock.pid == os.getpid()
            assert lock.port == port
            assert claimed.sock.getsockname()[1] == port
            assert not is_port_available(HOST, port)
        finally:
            claimed.sock.close()

    def test_claim_fails_on_bound_port(self, lock_path, root):
        port = _free_port()
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind((HOST, port))
            busy.listen(1)

            with pytest.raises(ClaimError, match="Could not bind"):
                claim(lock_path, port, root, "app", host=HOST)

        assert not lock_path.exists()

    def test_claim_refuses_lock_of_other_live_process(self, lock_path, root):
        other_pid = os.getpid() + 1
        write_lock(lock_path, _live_lock(root, 3555, pid=other_pid))

        with patch("streamdash.core.discovery.lock.is_process_alive", return_value=True):
            with pytest.raises(ClaimError, match="claimed"):
                claim(lock_path, _free_port(), root, "app", host=HOST)

        assert read_lock(lock_path).pid == other_pid


class TestAcquireServer:
    """Tests for the discover-then-claim loop."""

    def test_returns_existing_server(self, config):
        write_lock(config.lock_path, _live_lock(config.project_root, 3555))
        config.discovery.probe = False

        result = acquire_server(config)

        assert isinstance(result, DiscoveryResult)
        assert result.port == 3555

    def test_claims_when_absent(self, config):
        config.discovery.probe = False

        claimed = acquire_server(config, port=_free_port())
        try:
            assert read_lock(config.lock_path).port == claimed.port
        finally:
            claimed.sock.close()

    def test_retries_after_lost_race(self, config):
        config.discovery.probe = False
        port = _free_port()
        real_claim = claim
        calls = []

        def flaky_claim(*args, **kwargs):
            calls.append(args[1])
            if len(calls) == 1:
                raise ClaimError("lost the race")
            return real_claim(*args, **kwargs)

        with patch("streamdash.core.api.server.claim", side_effect=flaky_claim):
            claimed = acquire_server(config, port=port)
        claimed.sock.close()

        assert len(calls) == 2

    def test_gives_up_after_claim_attempts(self, config):
        config.discovery.probe = False
        config.discovery.claim_attempts = 2

        with patch(
            "streamdash.core.api.server.claim", side_effect=ClaimError("lost the race")
        ) as claim_mock:
            with pytest.raises(DiscoveryError, match="after 2 attempts"):
                acquire_server(config, port=_free_port())

        assert claim_mock.call_count == 2


class TestShutdownHandlers:
    def test_cleanup_removes_own_lock_once(self, lock_path, root):
        write_lock(lock_path, _live_lock(root, 3555))

        with patch("streamdash.core.discovery.lock.atexit.register") as register, patch(
            "streamdash.core.discovery.lock.signal.signal"
        ) as set_handler:
            cleanup = install_shutdown_handlers(lock_path)

        register.assert_called_once_with(cleanup)
        assert set_handler.call_count == 2
        cleanup()
        assert not lock_path.exists()
        cleanup()
