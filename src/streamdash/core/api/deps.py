"""
Server context shared by the API routes.

One ServerContext is built per application and stored on app.state; the
routes reach it through the get_context dependency. Nothing here is a
module global, so tests can build as many independent apps as they like.
"""

from dataclasses import dataclass, field
from pathlib import Path

from fastapi import Request

from streamdash.core.config.models import StreamdashConfig
from streamdash.core.db.models import utc_now_iso
from streamdash.core.events.broadcaster import EventBroadcaster
from streamdash.core.reconcile.engine import ReconciliationEngine
from streamdash.core.scanner.scanner import CommitScanner
from streamdash.core.streams.service import StreamService
from streamdash.core.worktree.inspector import WorktreeInspector


@dataclass
class ServerContext:
    """
    Components of one running streamdash server.

    Attributes:
        config: Effective configuration
        broadcaster: SSE client registry, shared by every notifier
        inspector: Git worktree inspector
        scanner: Periodic commit scanner
        service: Stream mutation service
        reconciler: Reconciliation engine
        lock_path: Lock file removed on shutdown (None when not claimed)
        run_scanner: Start the scanner in the application lifespan
    """

    config: StreamdashConfig
    broadcaster: EventBroadcaster
    inspector: WorktreeInspector
    scanner: CommitScanner
    service: StreamService
    reconciler: ReconciliationEngine
    lock_path: Path | None = None
    run_scanner: bool = True
    started_at: str = field(default_factory=utc_now_iso)

    @property
    def db_path(self) -> Path:
        return self.config.db_path

    @classmethod
    def from_config(
        cls,
        config: StreamdashConfig,
        *,
        inspector: WorktreeInspector | None = None,
        lock_path: Path | None = None,
        run_scanner: bool = True,
    ) -> "ServerContext":
        """Wire up all components from a configuration."""
        broadcaster = EventBroadcaster(
            heartbeat_interval=config.events.heartbeat_seconds,
            queue_size=config.events.queue_size,
        )
        if inspector is None:
            inspector = WorktreeInspector(
                config.project_root,
                base_branch=config.base_branch,
                timeout=config.scanner.git_timeout_seconds,
                max_commits=config.scanner.max_commits,
            )
        db_path = config.db_path
        return cls(
            config=config,
            broadcaster=broadcaster,
            inspector=inspector,
            scanner=CommitScanner(
                db_path, inspector, broadcaster, interval=config.scanner.interval_seconds
            ),
            service=StreamService(db_path, broadcaster),
            reconciler=ReconciliationEngine(db_path, inspector, broadcaster),
            lock_path=lock_path,
            run_scanner=run_scanner,
        )


def get_context(request: Request) -> ServerContext:
    """FastAPI dependency returning the application's ServerContext."""
    context: ServerContext = request.app.state.context
    return context
