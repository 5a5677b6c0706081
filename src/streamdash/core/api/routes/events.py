"""
Server-Sent Events route.

- GET /api/events - Long-lived push channel

Frames: `connected` on open, then `streams`, `commits`, `stats` and
`all`, each with a JSON payload carrying at least `type` and
`timestamp`; `: heartbeat` comments keep idle connections open.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from streamdash.core.api.deps import ServerContext, get_context
from streamdash.core.events.broadcaster import SSE_HEADERS

router = APIRouter()


@router.get("/events")
async def events(
    request: Request, ctx: ServerContext = Depends(get_context)
) -> StreamingResponse:
    _client_id, frames = ctx.broadcaster.open_stream(request.is_disconnected)
    return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)
