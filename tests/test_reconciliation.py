"""
Tests for the reconciliation engine.

Tests validate:
- Dry runs never mutate the store
- A stream is stale only when its worktree is gone AND its branch is merged
- Orphaned worktrees are reported, and only registered on request
- Applying archives stale streams with one notification; a repeat is a no-op
"""

from unittest.mock import patch

import pytest

from streamdash.core.db.connection import get_connection
from streamdash.core.db.models import StreamStatus
from streamdash.core.db.queries import get_stream, get_stream_history, list_streams
from streamdash.core.reconcile.engine import ReconciliationEngine, format_report
from streamdash.core.reconcile.models import ReconciliationOptions

APPLY_ARCHIVE = ReconciliationOptions(dry_run=False, auto_archive_stale=True)


@pytest.fixture
def engine(db_path, inspector, broadcaster):
    return ReconciliationEngine(db_path, inspector, broadcaster)


def _snapshot(db_path):
    with get_connection(db_path) as conn:
        return [s.model_dump() for s in list_streams(conn)]


class TestClassification:
    """Tests for matched / stale / orphaned classification."""

    def test_present_worktree_is_matched(self, engine, inspector, register, tmp_path):
        path = inspector.add_worktree(tmp_path / "wt" / "s1", "feature-x")
        register("s1", branch="feature-x", worktree_path=path)

        result = engine.reconcile()

        assert result.matched_ids == {"s1"}
        assert result.stale_streams == []

    def test_missing_and_merged_is_stale(self, engine, inspector, register, tmp_path):
        inspector.merged = {"feature-x"}
        register("s1", branch="feature-x", worktree_path=str(tmp_path / "wt" / "s1"))

        result = engine.reconcile()

        assert result.stale_ids == {"s1"}
        assert result.stale_streams[0].reason == "worktree missing and branch merged"
        assert result.stale_streams[0].new_status is None

    def test_missing_but_unmerged_is_not_stale(self, engine, register, tmp_path):
        register("s1", branch="feature-x", worktree_path=str(tmp_path / "wt" / "s1"))

        result = engine.reconcile(APPLY_ARCHIVE)

        assert result.stale_ids == set()
        assert result.matched[0].reason == "worktree missing but branch not merged"
        with get_connection(engine.db_path) as conn:
            assert get_stream(conn, "s1").status == StreamStatus.ACTIVE

    def test_merged_but_present_is_not_stale(self, engine, inspector, register, tmp_path):
        inspector.merged = {"feature-x"}
        path = inspector.add_worktree(tmp_path / "wt" / "s1", "feature-x")
        register("s1", branch="feature-x", worktree_path=path)

        result = engine.reconcile(APPLY_ARCHIVE)

        assert result.stale_ids == set()
        assert result.archived == []

    def test_stream_without_worktree_is_matched(self, engine, register):
        register("notes")

        result = engine.reconcile()

        assert result.matched[0].reason == "no worktree recorded"

    def test_archived_streams_are_not_examined(self, engine, inspector, register, tmp_path):
        inspector.merged = {"feature-x"}
        register(
            "old",
            status=StreamStatus.ARCHIVED,
            branch="feature-x",
            worktree_path=str(tmp_path / "gone"),
        )

        result = engine.reconcile()

        assert result.summary.total_in_db == 0
        assert result.stale_streams == []

    def test_orphans_exclude_main_and_known_paths(self, engine, inspector, register, tmp_path):
        known = inspector.add_worktree(tmp_path / "wt" / "known", "known-branch")
        inspector.add_worktree(tmp_path / "wt" / "stray", "stray-branch")
        archived_path = inspector.add_worktree(tmp_path / "wt" / "shelved", "shelved-branch")
        register("known", worktree_path=known)
        register("shelf", status=StreamStatus.ARCHIVED, worktree_path=archived_path)

        result = engine.reconcile()

        assert result.orphaned_ids == {"stray"}
        assert result.summary.total_worktrees == 3
        assert result.summary.orphaned == 1

    def test_classification_bug_is_not_reported_as_stream_error(self, engine, register):
        register("notes")

        with patch.object(ReconciliationEngine, "_classify", side_effect=KeyError("branch")):
            with pytest.raises(KeyError):
                engine.reconcile()


class TestDryRun:
    def test_dry_run_never_mutates(self, engine, inspector, register, recorder, tmp_path, db_path):
        inspector.merged = {"feature-x"}
        inspector.add_worktree(tmp_path / "wt" / "stray", "stray-branch")
        register("s1", branch="feature-x", worktree_path=str(tmp_path / "wt" / "s1"))
        before = _snapshot(db_path)

        result = engine.reconcile(
            ReconciliationOptions(dry_run=True, auto_archive_stale=True, auto_add_orphaned=True)
        )

        assert _snapshot(db_path) == before
        assert result.stale_streams[0].new_status == "archived"
        assert result.archived == []
        assert result.added == []
        assert recorder.events() == []


class TestApply:
    """Tests for applying corrections."""

    def test_example_scenario_archives_once(self, engine, inspector, register, recorder, tmp_path):
        inspector.merged = {"feature-x"}
        register(
            "S1",
            status="in-progress",
            branch="feature-x",
            worktree_path=str(tmp_path / "wt" / "S1"),
        )

        first = engine.reconcile(APPLY_ARCHIVE)

        assert first.archived == ["S1"]
        assert first.summary.archived == 1
        assert recorder.events() == ["streams"]
        with get_connection(engine.db_path) as conn:
            assert get_stream(conn, "S1").status == StreamStatus.ARCHIVED
            assert get_stream_history(conn, "S1")[0].event_type == "archived"

        recorder.frames.clear()
        second = engine.reconcile(APPLY_ARCHIVE)

        assert second.archived == []
        assert second.stale_streams == []
        assert recorder.events() == []

    def test_add_orphaned_registers_initializing_streams(
        self, engine, inspector, recorder, tmp_path, db_path
    ):
        path = inspector.add_worktree(tmp_path / "wt" / "stray", "stray-branch")

        result = engine.reconcile(ReconciliationOptions(dry_run=False, auto_add_orphaned=True))

        assert result.added == ["stray"]
        assert result.orphaned_worktrees[0].added is True
        assert recorder.events() == ["streams"]
        with get_connection(db_path) as conn:
            stream = get_stream(conn, "stray")
        assert stream.status == StreamStatus.INITIALIZING
        assert stream.worktree_path == path
        assert stream.branch == "stray-branch"

    def test_apply_without_flags_changes_nothing(
        self, engine, inspector, register, recorder, tmp_path, db_path
    ):
        inspector.merged = {"feature-x"}
        register("s1", branch="feature-x", worktree_path=str(tmp_path / "wt" / "s1"))
        before = _snapshot(db_path)

        engine.reconcile(ReconciliationOptions(dry_run=False))

        assert _snapshot(db_path) == before
        assert recorder.events() == []


class TestReport:
    def test_report_lists_sections(self, engine, inspector, register, tmp_path):
        inspector.merged = {"feature-x"}
        inspector.add_worktree(tmp_path / "wt" / "stray", "stray-branch")
        register("s1", title="Login", branch="feature-x", worktree_path=str(tmp_path / "s1"))

        report = format_report(engine.reconcile())

        assert report.startswith("Reconciliation report (dry run)")
        assert "Stale streams:" in report
        assert "s1: Login (feature-x)" in report
        assert "Orphaned worktrees:" in report
        assert "stray-branch at" in report
