"""
Tests for the HTTP API.

Tests validate:
- Stream endpoints: listing, registration, updates, archiving, history
- Commit recording (201 new, 200 duplicate) and paging
- Error bodies carry error_code/message/detail
- Reconciliation endpoints never register orphaned worktrees
- The lifespan starts and stops the scanner and removes the lock
"""

import asyncio
import os
from unittest.mock import MagicMock

import pytest
from conftest import RecordingConnection
from fastapi.testclient import TestClient

from streamdash.core.api.app import create_app
from streamdash.core.api.deps import ServerContext
from streamdash.core.api.routes.events import events
from streamdash.core.db.models import StreamStatus
from streamdash.core.discovery.lock import ServerLock, write_lock


@pytest.fixture
def context(config, inspector):
    return ServerContext.from_config(config, inspector=inspector, run_scanner=False)


@pytest.fixture
def client(context):
    return TestClient(create_app(context))


@pytest.fixture
def observer(context):
    """A recording SSE client on the application's broadcaster."""
    connection = RecordingConnection()
    context.broadcaster.add_client(connection)
    connection.frames.clear()
    return connection


def _create(client, stream_id, **fields):
    body = {"id": stream_id, "title": stream_id.title(), **fields}
    response = client.post("/api/streams", json=body)
    assert response.status_code == 201, response.text
    return response.json()


class TestRoot:
    def test_root(self, client):
        assert client.get("/").json() == {"status": "ok", "message": "streamdash API"}

    def test_health(self, client, config):
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["project"] == config.project_name
        assert data["pid"] == os.getpid()
        assert data["scanner"] == "idle"


class TestStreams:
    """Tests for /api/streams."""

    def test_create_and_get(self, client, observer):
        created = _create(client, "auth", status="in_progress", branch="feature-auth")

        fetched = client.get("/api/streams/auth").json()

        assert created["status"] == "active"
        assert created["stream_number"] == 1
        assert fetched["branch"] == "feature-auth"
        assert observer.events() == ["streams"]

    def test_duplicate_is_conflict(self, client):
        _create(client, "auth")

        response = client.post("/api/streams", json={"id": "auth", "title": "Again"})

        assert response.status_code == 409
        assert response.json()["error_code"] == "CONFLICT"

    def test_invalid_body_is_validation_error(self, client):
        response = client.post("/api/streams", json={"id": "auth"})

        assert response.status_code == 422
        body = response.json()
        assert body["error_code"] == "VALIDATION_ERROR"
        assert "title" in body["detail"]

    def test_unknown_stream_is_not_found(self, client):
        response = client.get("/api/streams/nope")

        assert response.status_code == 404
        body = response.json()
        assert body["error_code"] == "NOT_FOUND"
        assert body["message"] == "Stream not found: nope"

    def test_list_filters_and_hides_archived(self, client, register):
        register("a", status=StreamStatus.ACTIVE)
        register("b", status=StreamStatus.BLOCKED)
        register("c", status=StreamStatus.ARCHIVED)

        default = {s["id"] for s in client.get("/api/streams").json()}
        active = client.get("/api/streams", params={"status": "in-progress"}).json()
        archived = client.get("/api/streams", params={"status": "archived"}).json()
        everything = client.get("/api/streams", params={"include_archived": "true"}).json()

        assert default == {"a", "b"}
        assert [s["id"] for s in active] == ["a"]
        assert [s["id"] for s in archived] == ["c"]
        assert len(everything) == 3

    def test_list_rejects_unknown_status(self, client):
        response = client.get("/api/streams", params={"status": "done"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST"

    def test_list_includes_recent_activity(self, client, register):
        register("auth")
        client.post(
            "/api/streams/auth/commits",
            json={"commit_hash": "abcdef1", "message": "Add form", "files_changed": 2},
        )

        stream = client.get("/api/streams").json()[0]

        assert stream["recent_activity"]["last_commit_message"] == "Add form"
        assert stream["recent_activity"]["files_changed"] == 2

    def test_patch_status(self, client, register, observer):
        register("auth")

        response = client.patch("/api/streams/auth", json={"status": "blocked"})

        assert response.status_code == 200
        assert response.json()["status"] == "blocked"
        assert observer.events() == ["streams"]

    def test_patch_invalid_value_changes_nothing(self, client, register):
        register("auth")

        response = client.patch("/api/streams/auth", json={"status": "done", "title": "New"})

        assert response.status_code == 400
        assert client.get("/api/streams/auth").json()["title"] == "Auth"

    def test_archive_and_repeat(self, client, register):
        register("auth", status=StreamStatus.COMPLETED)

        first = client.post("/api/streams/auth/archive").json()
        second = client.post("/api/streams/auth/archive").json()

        assert first["stream"]["status"] == "archived"
        assert first["already_archived"] is False
        assert second["already_archived"] is True

    def test_archive_active_is_conflict(self, client, register):
        register("auth", status=StreamStatus.ACTIVE)

        response = client.post("/api/streams/auth/archive")

        assert response.status_code == 409

    def test_bulk_archive(self, client, register):
        register("a", status=StreamStatus.COMPLETED)
        register("b", status=StreamStatus.ACTIVE)

        response = client.post("/api/streams/archive-bulk", json={"stream_ids": ["a", "b"]})

        assert response.status_code == 200
        data = response.json()
        assert data["archived_count"] == 1
        assert data["failed_count"] == 1

    def test_bulk_archive_requires_ids(self, client):
        response = client.post("/api/streams/archive-bulk", json={"stream_ids": []})

        assert response.status_code == 422

    def test_history(self, client, register):
        register("auth")
        client.patch("/api/streams/auth", json={"status": "blocked"})

        history = client.get("/api/streams/auth/history").json()

        assert [h["event_type"] for h in history] == ["status_changed", "created"]
        assert client.get("/api/streams/nope/history").status_code == 404


class TestCommits:
    """Tests for commit recording and listing."""

    def test_record_new_then_duplicate(self, client, register, observer):
        register("auth")
        body = {"commit_hash": "abcdef1", "message": "Add form"}

        first = client.post("/api/streams/auth/commits", json=body)
        second = client.post("/api/streams/auth/commits", json=body)

        assert first.status_code == 201
        assert first.json()["inserted"] is True
        assert second.status_code == 200
        assert second.json()["inserted"] is False
        assert observer.events() == ["commits", "stats"]

    def test_record_for_unknown_stream(self, client):
        response = client.post(
            "/api/streams/nope/commits", json={"commit_hash": "abcdef1", "message": "x"}
        )

        assert response.status_code == 404

    def test_paging_newest_first(self, client, register):
        register("auth")
        for day in (1, 2, 3):
            client.post(
                "/api/streams/auth/commits",
                json={
                    "commit_hash": f"{day:07d}",
                    "message": f"day {day}",
                    "timestamp": f"2026-01-0{day}T08:00:00.000Z",
                },
            )

        first_page = client.get("/api/commits", params={"limit": 2}).json()
        second_page = client.get("/api/commits", params={"limit": 2, "offset": 2}).json()

        assert [c["message"] for c in first_page] == ["day 3", "day 2"]
        assert [c["message"] for c in second_page] == ["day 1"]

    def test_offset_timestamp_sorts_by_instant(self, client, register):
        register("auth")
        for commit_hash, timestamp in (
            ("aaaaaaa", "2026-01-02T23:00:00-05:00"),
            ("bbbbbbb", "2026-01-03T01:00:00.000Z"),
        ):
            response = client.post(
                "/api/streams/auth/commits",
                json={"commit_hash": commit_hash, "message": commit_hash, "timestamp": timestamp},
            )
            assert response.status_code == 201

        recent = client.get("/api/commits").json()

        assert [c["commit_hash"] for c in recent] == ["aaaaaaa", "bbbbbbb"]
        assert recent[0]["timestamp"] == "2026-01-03T04:00:00.000Z"

    def test_garbage_timestamp_is_validation_error(self, client, register):
        register("auth")

        response = client.post(
            "/api/streams/auth/commits",
            json={"commit_hash": "abcdef1", "message": "x", "timestamp": "not a date"},
        )

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"
        assert client.get("/api/commits").json() == []

    def test_filter_by_unknown_stream(self, client):
        assert client.get("/api/commits", params={"stream_id": "nope"}).status_code == 404

    def test_limit_is_bounded(self, client):
        assert client.get("/api/commits", params={"limit": 0}).status_code == 422
        assert client.get("/api/commits", params={"limit": 501}).status_code == 422


class TestStats:
    def test_counters(self, client, register):
        register("a", status=StreamStatus.ACTIVE)
        register("b", status=StreamStatus.BLOCKED)
        client.post("/api/streams/a/commits", json={"commit_hash": "abcdef1", "message": "x"})

        stats = client.get("/api/stats").json()

        assert stats["active_streams"] == 2
        assert stats["in_progress"] == 1
        assert stats["blocked"] == 1
        assert stats["total_commits"] == 1
        assert stats["commits_today"] == 1


class TestReconciliation:
    """Tests for /api/reconciliation."""

    @pytest.fixture
    def drift(self, inspector, register, tmp_path):
        inspector.merged = {"feature-x"}
        inspector.add_worktree(tmp_path / "wt" / "stray", "stray-branch")
        register("s1", branch="feature-x", worktree_path=str(tmp_path / "wt" / "s1"))

    def test_status_is_a_dry_run(self, client, drift):
        data = client.get("/api/reconciliation/status").json()

        assert data["options"]["dry_run"] is True
        assert [s["stream_id"] for s in data["stale_streams"]] == ["s1"]
        assert [w["id"] for w in data["orphaned_worktrees"]] == ["stray"]
        assert client.get("/api/streams/s1").json()["status"] == "active"

    def test_run_defaults_to_dry_run(self, client, drift):
        data = client.post("/api/reconciliation/run").json()

        assert data["archived"] == []

    def test_run_archives_stale(self, client, drift, observer):
        data = client.post(
            "/api/reconciliation/run",
            json={"dry_run": False, "auto_archive_stale": True},
        ).json()

        assert data["archived"] == ["s1"]
        assert client.get("/api/streams/s1").json()["status"] == "archived"
        assert observer.events() == ["streams"]

    def test_run_never_adds_orphans(self, client, drift):
        data = client.post(
            "/api/reconciliation/run",
            json={"dry_run": False, "auto_add_orphaned": True},
        ).json()

        assert data["added"] == []
        assert data["options"]["auto_add_orphaned"] is False
        assert any("auto_add_orphaned" in w for w in data["warnings"])
        assert client.get("/api/streams/stray").status_code == 404

    def test_worktrees_and_merged(self, client, drift):
        worktrees = client.get("/api/reconciliation/worktrees").json()
        merged = client.get("/api/reconciliation/merged").json()

        assert worktrees["count"] == 2
        assert merged == {"base_branch": "main", "branches": ["feature-x"], "count": 1}


class TestEvents:
    @pytest.mark.asyncio
    async def test_event_stream_starts_with_connected(self, context):
        request = MagicMock()

        async def connected() -> bool:
            return False

        request.is_disconnected = connected

        response = await events(request, context)
        first = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=2)

        assert response.media_type == "text/event-stream"
        assert response.headers["cache-control"] == "no-cache"
        assert context.broadcaster.client_count == 1
        assert first.startswith("event: connected")

        await response.body_iterator.aclose()
        assert context.broadcaster.client_count == 0


class TestLifespan:
    def test_starts_scanner_and_removes_lock(self, config, inspector):
        config.scanner.run_on_start = False
        context = ServerContext.from_config(
            config, inspector=inspector, lock_path=config.lock_path, run_scanner=True
        )
        write_lock(
            config.lock_path,
            ServerLock(
                pid=os.getpid(),
                port=3555,
                project_root=str(config.project_root),
                project_name=config.project_name,
            ),
        )

        with TestClient(create_app(context)) as client:
            assert client.get("/health").status_code == 200
            assert context.scanner.running is True

        assert context.scanner.running is False
        assert not config.lock_path.exists()
