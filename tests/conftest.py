"""
Pytest configuration and shared fixtures.

Provides an isolated environment, a temporary stream store, a fake
worktree inspector and recording SSE clients used across the test suite.
"""

import os
import threading
from pathlib import Path

import pytest

from streamdash.core.config.models import StreamdashConfig
from streamdash.core.db.connection import init_db
from streamdash.core.db.models import StreamCreate, StreamStatus
from streamdash.core.events.broadcaster import EventBroadcaster
from streamdash.core.streams.service import StreamService
from streamdash.core.worktree.inspector import (
    CommitRecord,
    InspectionError,
    WorktreeRecord,
    normalize_path,
)

# ==============================================================================
# Environment Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep tests away from the real XDG directories and STREAMDASH_* variables."""
    for key in list(os.environ):
        if key.startswith("STREAMDASH_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "xdg-cache"))


@pytest.fixture
def project_dir(tmp_path):
    """Provide a temporary project directory with a .git marker."""
    project = tmp_path / "app"
    project.mkdir()
    (project / ".git").mkdir()
    return project


@pytest.fixture
def db_path(tmp_path):
    """Provide an initialized, empty stream store."""
    path = tmp_path / "store" / "streams.db"
    init_db(path)
    return path


@pytest.fixture
def config(project_dir, db_path, tmp_path):
    """Configuration pointing at the temporary project and store."""
    return StreamdashConfig(
        project_root=project_dir,
        database_path=db_path,
        lock_file_path=tmp_path / "store" / ".api-server.lock",
    )


# ==============================================================================
# Fakes
# ==============================================================================


class FakeInspector:
    """
    In-memory stand-in for WorktreeInspector.

    Tests set `worktrees`, `merged` and `commits` (keyed by normalized
    worktree path) directly. Paths listed in `failing` raise
    InspectionError. When `gate` is set, commits_since blocks on it.
    """

    def __init__(self, project_root: Path, base_branch: str = "main"):
        self.project_root = Path(project_root)
        self.base_branch = base_branch
        self.worktrees: dict[str, WorktreeRecord] = {
            "main": WorktreeRecord(
                id="main", path=normalize_path(project_root), branch="main", is_main=True
            )
        }
        self.merged: set[str] = set()
        self.commits: dict[str, list[CommitRecord]] = {}
        self.failing: set[str] = set()
        self.gate: threading.Event | None = None
        self.commit_calls: list[str] = []

    def add_worktree(self, path: Path, branch: str, commit_hash: str = "abc1234") -> str:
        normalized = normalize_path(path)
        worktree_id = Path(normalized).name
        self.worktrees[worktree_id] = WorktreeRecord(
            id=worktree_id, path=normalized, branch=branch, commit_hash=commit_hash
        )
        return normalized

    def list_worktrees(self) -> dict[str, WorktreeRecord]:
        return dict(self.worktrees)

    def merged_branches(self) -> set[str]:
        return set(self.merged)

    def commits_since(self, worktree_path, since=None) -> list[CommitRecord]:
        path = normalize_path(worktree_path)
        self.commit_calls.append(path)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if path in self.failing:
            raise InspectionError(f"Worktree not found: {path}", path)
        return list(self.commits.get(path, []))


class RecordingConnection:
    """SSE client connection that records every frame it is sent."""

    def __init__(self, fail: bool = False):
        self.frames: list[str] = []
        self.fail = fail

    def send(self, frame: str) -> None:
        if self.fail:
            raise ConnectionResetError("client went away")
        self.frames.append(frame)

    def events(self) -> list[str]:
        """Event names received, in order."""
        names = []
        for frame in self.frames:
            for line in frame.splitlines():
                if line.startswith("event: "):
                    names.append(line[len("event: ") :])
        return names


def make_commit(commit_hash: str, message: str = "work", files_changed: int = 1) -> CommitRecord:
    return CommitRecord(
        commit_hash=commit_hash,
        author="Dev",
        timestamp="2026-01-02T08:00:00.000Z",
        message=message,
        files_changed=files_changed,
    )


# ==============================================================================
# Component Fixtures
# ==============================================================================


@pytest.fixture
def inspector(project_dir):
    return FakeInspector(project_dir)


@pytest.fixture
def broadcaster():
    return EventBroadcaster(heartbeat_interval=0.05)


@pytest.fixture
def recorder(broadcaster):
    """A recording client registered with the broadcaster (connected frame cleared)."""
    connection = RecordingConnection()
    broadcaster.add_client(connection)
    connection.frames.clear()
    return connection


@pytest.fixture
def service(db_path, broadcaster):
    return StreamService(db_path, broadcaster)


@pytest.fixture
def register(db_path):
    """Register a stream without notifying anyone."""
    quiet = StreamService(db_path)

    def _register(stream_id: str, **fields) -> None:
        fields.setdefault("title", stream_id.title())
        fields.setdefault("status", StreamStatus.ACTIVE)
        quiet.register(StreamCreate(id=stream_id, **fields))

    return _register

