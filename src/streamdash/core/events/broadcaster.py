"""
Server-Sent Events broadcaster.

Holds the set of connected dashboard clients and pushes typed update
notifications to them. Delivery is best-effort: a client whose write
fails is dropped and the broadcast continues with the rest. Observers
that suspect a missed event re-read everything.

Frame format:
    event: <type>
    data: <json>

Heartbeats are SSE comment frames (": heartbeat") sent whenever a
client has been idle for the heartbeat interval.

Usage:
    broadcaster = EventBroadcaster(heartbeat_interval=30.0)

    client_id, frames = broadcaster.open_stream(request.is_disconnected)
    return StreamingResponse(frames, headers=SSE_HEADERS)

    broadcaster.notify("streams")
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from itertools import count
from typing import Any, Protocol

from streamdash.core.db.models import utc_now_iso

logger = logging.getLogger(__name__)

EVENT_TYPES = ("streams", "commits", "stats", "all")
CONNECTED_EVENT = "connected"
HEARTBEAT_FRAME = ": heartbeat\n\n"

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ClientConnection(Protocol):
    """Anything a frame can be written to. send() raises when the client is gone."""

    def send(self, frame: str) -> None: ...


class ClientGoneError(Exception):
    """Raised when writing to a client that can no longer receive frames."""

    pass


def format_event(event_type: str, payload: Any) -> str:
    """
    Render one SSE frame.

    Example:
        >>> format_event("stats", {"type": "stats"})
        'event: stats\\ndata: {"type": "stats"}\\n\\n'
    """
    return f"event: {event_type}\ndata: {json.dumps(payload, default=str)}\n\n"


class QueueConnection:
    """
    Client connection backed by a bounded asyncio.Queue.

    The streaming response drains the queue. A client that falls
    `maxsize` frames behind is treated as gone.
    """

    def __init__(self, maxsize: int = 100):
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def send(self, frame: str) -> None:
        if self.closed:
            raise ClientGoneError("connection closed")
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull as e:
            raise ClientGoneError("client is not keeping up") from e

    def close(self) -> None:
        self.closed = True


class EventBroadcaster:
    """
    Registry of SSE clients with typed fan-out.

    The broadcaster is an ordinary object owned by the server context and
    passed to whatever needs to notify (scanner, stream service,
    reconciliation engine).
    """

    def __init__(self, heartbeat_interval: float = 30.0, queue_size: int = 100):
        self.heartbeat_interval = heartbeat_interval
        self.queue_size = queue_size
        self._clients: dict[str, ClientConnection] = {}
        self._ids = count(1)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def has_client(self, client_id: str) -> bool:
        return client_id in self._clients

    def add_client(self, connection: ClientConnection) -> str:
        """
        Register a client and send it the `connected` event.

        Returns:
            Generated client id ("client-<n>")
        """
        client_id = f"client-{next(self._ids)}"
        self._clients[client_id] = connection
        self._send(
            client_id,
            CONNECTED_EVENT,
            {"type": CONNECTED_EVENT, "client_id": client_id, "timestamp": utc_now_iso()},
        )
        logger.info("SSE client %s connected (%d total)", client_id, len(self._clients))
        return client_id

    def remove_client(self, client_id: str) -> None:
        connection = self._clients.pop(client_id, None)
        if connection is None:
            return
        if isinstance(connection, QueueConnection):
            connection.close()
        logger.info("SSE client %s disconnected (%d remaining)", client_id, len(self._clients))

    def _send(self, client_id: str, event_type: str, payload: Any) -> bool:
        connection = self._clients.get(client_id)
        if connection is None:
            return False
        try:
            connection.send(format_event(event_type, payload))
        except Exception as e:
            logger.warning("Dropping SSE client %s: %s", client_id, e)
            self.remove_client(client_id)
            return False
        return True

    def broadcast(self, event_type: str, payload: Any) -> int:
        """
        Send one event to every client.

        A client whose write fails is removed; the others still receive
        the event.

        Returns:
            Number of clients the event was delivered to
        """
        sent = 0
        for client_id in list(self._clients):
            if self._send(client_id, event_type, payload):
                sent += 1
        if sent:
            logger.debug("Broadcast %r to %d client(s)", event_type, sent)
        return sent

    def notify(self, event_type: str = "all", **extra: Any) -> int:
        """
        Tell clients that data of `event_type` changed.

        The payload is {"type", "timestamp"} plus any extra fields.
        """
        payload = {"type": event_type, "timestamp": utc_now_iso(), **extra}
        return self.broadcast(event_type, payload)

    def open_stream(
        self, is_disconnected: Callable[[], Awaitable[bool]] | None = None
    ) -> tuple[str, AsyncIterator[str]]:
        """
        Register a queue-backed client and return its frame iterator.

        The iterator yields the `connected` frame first, then every
        broadcast frame, and a heartbeat comment whenever
        `heartbeat_interval` passes without traffic. It ends when the
        observer disconnects or the client is dropped, and always
        unregisters the client.

        Args:
            is_disconnected: Awaitable check for observer disconnect
                (e.g. starlette's Request.is_disconnected)
        """
        connection = QueueConnection(maxsize=self.queue_size)
        client_id = self.add_client(connection)

        async def frames() -> AsyncIterator[str]:
            try:
                while self.has_client(client_id):
                    try:
                        frame = await asyncio.wait_for(
                            connection.queue.get(), timeout=self.heartbeat_interval
                        )
                    except asyncio.TimeoutError:
                        if is_disconnected is not None and await is_disconnected():
                            break
                        yield HEARTBEAT_FRAME
                        continue
                    yield frame
            finally:
                self.remove_client(client_id)

        return client_id, frames()
