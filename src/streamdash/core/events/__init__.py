"""
Server-Sent Events fan-out for streamdash.
"""

from streamdash.core.events.broadcaster import (
    EVENT_TYPES,
    HEARTBEAT_FRAME,
    SSE_HEADERS,
    EventBroadcaster,
    QueueConnection,
    format_event,
)

__all__ = [
    "EVENT_TYPES",
    "HEARTBEAT_FRAME",
    "SSE_HEADERS",
    "EventBroadcaster",
    "QueueConnection",
    "format_event",
]
