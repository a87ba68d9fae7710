"""
Output Relay for the sandbox engine

A live fan-out of execution output keyed by session id:
- Producers call `publish`, which never blocks and never awaits
- Consumers `subscribe` to a session and iterate over chunks
- Chunks for a session with no subscribers are dropped, not buffered
- Every subscriber of a session sees the same chunks in production order
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..schemas.execution import OutputStream

logger = logging.getLogger(__name__)

_CLOSED = object()


@dataclass(frozen=True)
class OutputChunk:
    """One piece of stdout/stderr from a running execution."""
    session_id: str
    execution_id: str
    stream: OutputStream
    data: str
    sequence: int
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "output",
            "session_id": self.session_id,
            "execution_id": self.execution_id,
            "stream": self.stream.value,
            "data": self.data,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
        }


class Subscription:
    """
    A subscriber's view of one session.

    Iterate with `async for chunk in subscription`; iteration ends when the
    subscription is closed or the session is closed on the relay.
    """

    def __init__(self, relay: "OutputRelay", session_id: str, max_queue_size: int = 0):
        self.session_id = session_id
        self.dropped = 0
        self._relay = relay
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, chunk: OutputChunk) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def _finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # Make room for the end marker
            self._queue.get_nowait()
            self.dropped += 1
            self._queue.put_nowait(_CLOSED)

    async def get(self, timeout: float | None = None) -> OutputChunk | None:
        """Wait for the next chunk. Returns None once the subscription is closed."""
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            # Keep the marker for any later reader
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def close(self) -> None:
        self._relay.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> OutputChunk:
        chunk = await self.get()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class OutputRelay:
    """Per-session broadcast channel for live execution output."""

    def __init__(self, max_queue_size: int = 0):
        self.max_queue_size = max_queue_size
        self._subscribers: dict[str, list[Subscription]] = {}
        self._sequence = itertools.count(1)

        self.published = 0
        self.dropped_no_subscriber = 0

    def subscribe(self, session_id: str) -> Subscription:
        """Register a new subscriber for a session."""
        subscription = Subscription(self, session_id, self.max_queue_size)
        self._subscribers.setdefault(session_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscriber. Unsubscribing twice is a no-op."""
        subscribers = self._subscribers.get(subscription.session_id)
        if subscribers and subscription in subscribers:
            subscribers.remove(subscription)
            if not subscribers:
                del self._subscribers[subscription.session_id]
        subscription._finish()

    def publish(
        self,
        session_id: str,
        execution_id: str,
        stream: OutputStream,
        data: str,
    ) -> int:
        """
        Deliver a chunk to every subscriber of the session.

        Returns:
            Number of subscribers the chunk was queued for.
        """
        subscribers = self._subscribers.get(session_id)
        if not subscribers:
            self.dropped_no_subscriber += 1
            return 0

        chunk = OutputChunk(
            session_id=session_id,
            execution_id=execution_id,
            stream=stream,
            data=data,
            sequence=next(self._sequence),
        )
        self.published += 1
        return sum(1 for subscription in list(subscribers) if subscription._offer(chunk))

    def close_session(self, session_id: str) -> int:
        """End every subscription of a session. Returns how many were closed."""
        subscribers = self._subscribers.pop(session_id, [])
        for subscription in subscribers:
            subscription._finish()
        return len(subscribers)

    def subscriber_count(self, session_id: str | None = None) -> int:
        if session_id is not None:
            return len(self._subscribers.get(session_id, []))
        return sum(len(subs) for subs in self._subscribers.values())

    @property
    def dropped(self) -> int:
        """Chunks dropped for lack of subscribers plus per-subscriber overflow."""
        overflow = sum(
            subscription.dropped
            for subs in self._subscribers.values()
            for subscription in subs
        )
        return self.dropped_no_subscriber + overflow
