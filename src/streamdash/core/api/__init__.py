"""
FastAPI application for streamdash.

Serves the stream store and the worktree reconciliation over HTTP, and
pushes change notifications to dashboards over Server-Sent Events.

API Endpoints:
- GET /health - Liveness, used by server discovery
- GET/POST /api/streams - List and register streams
- GET/PATCH /api/streams/{id} - Read and update one stream
- POST /api/streams/{id}/archive - Archive a completed stream
- POST /api/streams/archive-bulk - Archive several streams
- GET /api/streams/{id}/history - Status history
- POST /api/streams/{id}/commits - Record a commit
- GET /api/commits - Recent commits
- GET /api/stats - Dashboard counters
- GET/POST /api/reconciliation/... - Worktree reconciliation
- GET /api/events - Server-Sent Events

Usage:
    # Run the server for the current project
    streamdash serve

    # Or from Python
    from streamdash.core.api import ServerContext, create_app
    app = create_app(ServerContext.from_config(config))
"""

from streamdash.core.api.app import create_app
from streamdash.core.api.deps import ServerContext, get_context
from streamdash.core.api.server import acquire_server, run_server

__all__ = ["ServerContext", "acquire_server", "create_app", "get_context", "run_server"]
