"""
Tests for the periodic commit scanner.

Tests validate:
- New commits are stored and announced (commits, then stats)
- Re-scanning unchanged worktrees stores nothing and broadcasts nothing
- One failing worktree or store write does not stop the pass
- A trigger during a running pass is dropped
- stop() lets an in-flight pass finish
"""

import asyncio
import sqlite3
import threading
from unittest.mock import patch

import pytest
from conftest import make_commit

from streamdash.core.db.connection import get_connection
from streamdash.core.db.models import StreamStatus
from streamdash.core.db.queries import count_commits, insert_commits
from streamdash.core.scanner.scanner import IDLE, SCANNING, CommitScanner
from streamdash.core.streams.service import StreamNotFoundError


@pytest.fixture
def scanner(db_path, inspector, broadcaster):
    return CommitScanner(db_path, inspector, broadcaster, interval=3600)


@pytest.fixture
def two_streams(inspector, register, tmp_path):
    """Two active streams with worktrees; returns their normalized paths."""
    paths = {}
    for stream_id in ("s1", "s2"):
        path = inspector.add_worktree(tmp_path / "wt" / stream_id, f"feature-{stream_id}")
        register(stream_id, branch=f"feature-{stream_id}", worktree_path=path)
        paths[stream_id] = path
    return paths


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestScanPass:
    """Tests for a single scan pass."""

    @pytest.mark.asyncio
    async def test_ingests_new_commits(self, scanner, inspector, two_streams, recorder, db_path):
        inspector.commits[two_streams["s1"]] = [make_commit("a" * 40), make_commit("b" * 40)]
        inspector.commits[two_streams["s2"]] = [make_commit("c" * 40)]

        result = await scanner.trigger()

        assert result.scanned == 2
        assert result.commits_added == 3
        assert result.errors == 0
        assert recorder.events() == ["commits", "stats"]
        with get_connection(db_path) as conn:
            assert count_commits(conn, "s1") == 2
            assert count_commits(conn, "s2") == 1

    @pytest.mark.asyncio
    async def test_rescan_is_idempotent_and_silent(
        self, scanner, inspector, two_streams, recorder, db_path
    ):
        inspector.commits[two_streams["s1"]] = [make_commit("a" * 40)]
        await scanner.trigger()
        recorder.frames.clear()

        result = await scanner.trigger()

        assert result.commits_added == 0
        assert recorder.events() == []
        with get_connection(db_path) as conn:
            assert count_commits(conn) == 1

    @pytest.mark.asyncio
    async def test_failing_worktree_is_skipped(self, scanner, inspector, two_streams):
        inspector.failing.add(two_streams["s1"])
        inspector.commits[two_streams["s2"]] = [make_commit("c" * 40)]

        result = await scanner.trigger()

        assert result.errors == 1
        assert result.failed_streams == ["s1"]
        assert result.scanned == 1
        assert result.commits_added == 1

    @pytest.mark.asyncio
    async def test_store_error_is_isolated_to_its_stream(
        self, scanner, inspector, two_streams, recorder, db_path
    ):
        inspector.commits[two_streams["s1"]] = [make_commit("a" * 40)]
        inspector.commits[two_streams["s2"]] = [make_commit("c" * 40)]

        def locked_for_s1(conn, commits):
            commits = list(commits)
            if commits[0].stream_id == "s1":
                raise sqlite3.OperationalError("database is locked")
            return insert_commits(conn, commits)

        with patch(
            "streamdash.core.scanner.scanner.insert_commits", side_effect=locked_for_s1
        ):
            result = await scanner.trigger()

        assert result.errors == 1
        assert result.failed_streams == ["s1"]
        assert result.scanned == 1
        assert result.commits_added == 1
        assert recorder.events() == ["commits", "stats"]
        with get_connection(db_path) as conn:
            assert count_commits(conn, "s1") == 0
            assert count_commits(conn, "s2") == 1

    @pytest.mark.asyncio
    async def test_archived_and_worktreeless_streams_are_skipped(
        self, scanner, inspector, register, tmp_path
    ):
        path = inspector.add_worktree(tmp_path / "wt" / "old", "old")
        register("old", status=StreamStatus.ARCHIVED, worktree_path=path)
        register("notes")

        result = await scanner.trigger()

        assert result.scanned == 0
        assert inspector.commit_calls == []

    @pytest.mark.asyncio
    async def test_scan_single_stream(self, scanner, inspector, two_streams):
        inspector.commits[two_streams["s2"]] = [make_commit("c" * 40)]

        result = await scanner.scan_stream("s2")

        assert result.commits_added == 1
        assert inspector.commit_calls == [two_streams["s2"]]

    @pytest.mark.asyncio
    async def test_scan_unknown_stream(self, scanner):
        with pytest.raises(StreamNotFoundError):
            await scanner.scan_stream("nope")


class TestReentrancy:
    @pytest.mark.asyncio
    async def test_trigger_during_pass_is_dropped(self, scanner, inspector, two_streams):
        inspector.gate = threading.Event()

        running = asyncio.create_task(scanner.trigger())
        await _wait_for(lambda: inspector.commit_calls)
        assert scanner.state == SCANNING

        dropped = await scanner.trigger()
        inspector.gate.set()
        result = await running

        assert dropped is None
        assert result is not None
        assert len(inspector.commit_calls) == 2
        assert scanner.state == IDLE


class TestLifecycle:
    """Tests for start() / stop()."""

    @pytest.mark.asyncio
    async def test_start_runs_immediately_and_stop_cancels(self, scanner, inspector, two_streams):
        inspector.commits[two_streams["s1"]] = [make_commit("a" * 40)]

        scanner.start(run_immediately=True)
        await _wait_for(lambda: scanner.last_result is not None)
        await scanner.stop()

        assert scanner.running is False
        assert scanner.last_result.commits_added == 1

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_pass(self, scanner, inspector, two_streams):
        inspector.gate = threading.Event()
        inspector.commits[two_streams["s1"]] = [make_commit("a" * 40)]

        scanner.start(run_immediately=True)
        await _wait_for(lambda: inspector.commit_calls)
        asyncio.get_running_loop().call_later(0.05, inspector.gate.set)
        await scanner.stop()

        assert scanner.last_result is not None
        assert scanner.last_result.commits_added == 1
        assert scanner.state == IDLE
