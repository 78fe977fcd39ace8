"""Step events of live recording sessions.

Capture listeners fire on whatever thread appended the step. Each subscriber
is fed on the event loop it subscribed from, so a WebSocket or SSE handler
only ever touches its own queue.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List

from ..core.models import RecordedStep

logger = logging.getLogger(__name__)

STEP_EVENT = "step.recorded"
CLOSED_EVENT = "session.closed"


def step_event(step: RecordedStep) -> Dict[str, Any]:
    return {"type": STEP_EVENT, "step": step.to_dict()}


def closed_event(state: str) -> Dict[str, Any]:
    return {"type": CLOSED_EVENT, "state": state}


@dataclass(eq=False)
class _Subscriber:
    queue: asyncio.Queue
    loop: asyncio.AbstractEventLoop

    def deliver(self, message: Dict[str, Any]) -> bool:
        if self.loop.is_closed():
            return False
        self.loop.call_soon_threadsafe(self.queue.put_nowait, message)
        return True


class StepEventBroker:
    """Fans the steps of each recording session out to its stream subscribers."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[_Subscriber]] = {}
        self._lock = threading.Lock()

    @contextmanager
    def subscription(self, session_id: str) -> Iterator[asyncio.Queue]:
        """Queue receiving the session's events while the block runs; call from a coroutine."""
        subscriber = _Subscriber(asyncio.Queue(), asyncio.get_running_loop())
        with self._lock:
            self._subscribers.setdefault(session_id, []).append(subscriber)
        try:
            yield subscriber.queue
        finally:
            with self._lock:
                remaining = [s for s in self._subscribers.get(session_id, []) if s is not subscriber]
                if remaining:
                    self._subscribers[session_id] = remaining
                else:
                    self._subscribers.pop(session_id, None)

    def subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(session_id, []))

    def publish(self, session_id: str, message: Dict[str, Any]) -> int:
        """Hand ``message`` to every subscriber of the session; safe from any thread.

        Returns how many subscribers it reached.
        """
        with self._lock:
            subscribers = list(self._subscribers.get(session_id, []))
        delivered = sum(1 for subscriber in subscribers if subscriber.deliver(message))
        if delivered < len(subscribers):
            logger.debug("Dropped event for %d subscriber(s) of %s with a closed loop", len(subscribers) - delivered, session_id)
        return delivered

    def step_listener(self, session_id: str) -> Callable[[RecordedStep], None]:
        """Listener for :meth:`RecordingSession.add_listener` that publishes each captured step."""

        def listener(step: RecordedStep) -> None:
            self.publish(session_id, step_event(step))

        return listener

    def close(self, session_id: str, state: str) -> int:
        """Tell subscribers the session stopped or was discarded; their streams end here."""
        return self.publish(session_id, closed_event(state))


async def until_closed(queue: asyncio.Queue) -> AsyncIterator[Dict[str, Any]]:
    """Yield events from ``queue`` up to and including the session-closed event."""
    while True:
        message = await queue.get()
        yield message
        if message.get("type") == CLOSED_EVENT:
            return


step_events = StepEventBroker()
