"""
Reconciliation API routes.

- GET /api/reconciliation/status - Dry-run report
- POST /api/reconciliation/run - Run, optionally archiving stale streams
- GET /api/reconciliation/worktrees - Raw worktree list
- GET /api/reconciliation/merged - Raw merged-branch set

Registering orphaned worktrees as streams is not available over HTTP:
it is an explicit operator action (`streamdash reconcile --add-orphaned`).
"""

import asyncio
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from streamdash.core.api.deps import ServerContext, get_context
from streamdash.core.reconcile.models import ReconciliationOptions, ReconciliationResult

router = APIRouter()

AUTO_ADD_DISABLED = (
    "auto_add_orphaned is not available over HTTP and was ignored; "
    "register streams explicitly or run 'streamdash reconcile --apply --add-orphaned'"
)


class ReconciliationRunRequest(BaseModel):
    """Request body of POST /api/reconciliation/run."""

    dry_run: bool = True
    auto_archive_stale: bool = False
    auto_add_orphaned: bool = False


@router.get("/reconciliation/status", response_model=ReconciliationResult)
async def reconciliation_status(
    ctx: ServerContext = Depends(get_context),
) -> ReconciliationResult:
    """Report drift between the store and the worktrees. Never mutates."""
    return await ctx.reconciler.areconcile(ReconciliationOptions(dry_run=True))


@router.post("/reconciliation/run", response_model=ReconciliationResult)
async def reconciliation_run(
    body: ReconciliationRunRequest | None = None,
    ctx: ServerContext = Depends(get_context),
) -> ReconciliationResult:
    """
    Run a reconciliation.

    Defaults to a dry run. With dry_run=false and auto_archive_stale=true,
    stale streams are archived and observers get one `streams` event.
    """
    body = body or ReconciliationRunRequest()
    options = ReconciliationOptions(
        dry_run=body.dry_run,
        auto_archive_stale=body.auto_archive_stale,
        auto_add_orphaned=False,
    )
    result = await ctx.reconciler.areconcile(options)
    if body.auto_add_orphaned:
        result.warnings.append(AUTO_ADD_DISABLED)
    return result


@router.get("/reconciliation/worktrees")
async def reconciliation_worktrees(ctx: ServerContext = Depends(get_context)) -> dict[str, Any]:
    """Worktrees as git reports them."""
    worktrees = await asyncio.to_thread(ctx.inspector.list_worktrees)
    return {
        "worktrees": [worktree.to_dict() for worktree in worktrees.values()],
        "count": len(worktrees),
    }


@router.get("/reconciliation/merged")
async def reconciliation_merged(ctx: ServerContext = Depends(get_context)) -> dict[str, Any]:
    """Branches merged into the base branch."""
    merged = await asyncio.to_thread(ctx.inspector.merged_branches)
    return {
        "base_branch": ctx.config.base_branch,
        "branches": sorted(merged),
        "count": len(merged),
    }
