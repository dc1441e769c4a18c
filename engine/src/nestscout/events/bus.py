"""Async in-memory event bus.

Discovery components publish events (progress, phase completion, device
discoveries, anomaly flags) and subscribers (CLI, UI, registry bridges)
receive them. Delivery is fire-and-forget: each matching callback runs as
its own task, so a slow or failing subscriber never holds up discovery.

The most recent events are kept in a bounded buffer for late subscribers to
``replay``; nothing is persisted.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from uuid import uuid4

logger = logging.getLogger(__name__)

DEFAULT_HISTORY = 1000
WILDCARD = "*"

# Type alias for subscriber callbacks
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class Subscription:
    """A callback and the event types it wants (``"*"`` for all)."""

    event_types: frozenset[str]
    callback: EventCallback
    id: str = field(default_factory=lambda: uuid4().hex)

    def matches(self, event_type: str) -> bool:
        return WILDCARD in self.event_types or event_type in self.event_types


class EventBus:
    """Async pub/sub event bus with a bounded replay buffer.

    Parameters
    ----------
    history:
        Number of most recent events kept for ``replay``.
    """

    def __init__(self, history: int = DEFAULT_HISTORY) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[dict[str, Any]] = deque(maxlen=max(1, history))
        self._seq = 0
        self._pending: set[asyncio.Task] = set()

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any],
        source_id: str | None = None,
    ) -> int:
        """Buffer an event and schedule matching subscribers. Returns its sequence number."""
        self._seq += 1
        event = {
            "seq": self._seq,
            "event_type": event_type,
            "payload": payload,
            "source_id": source_id,
        }
        self._history.append(event)
        for sub in list(self._subscriptions.values()):
            if sub.matches(event_type):
                self._dispatch(sub, event)
        return self._seq

    def subscribe(self, event_types: list[str], callback: EventCallback) -> Subscription:
        """Register *callback* for *event_types*; pass the result to ``unsubscribe``."""
        sub = Subscription(event_types=frozenset(event_types), callback=callback)
        self._subscriptions[sub.id] = sub
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    async def replay(self, since_seq: int) -> list[dict[str, Any]]:
        """Return buffered events with a sequence number above *since_seq*."""
        return [event for event in self._history if event["seq"] > since_seq]

    async def drain(self) -> None:
        """Wait until every scheduled subscriber callback has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _dispatch(self, sub: Subscription, event: dict[str, Any]) -> None:
        try:
            task = asyncio.ensure_future(sub.callback(event))
        except Exception:
            logger.exception("Error scheduling callback for subscription %s", sub.id)
            return
        self._pending.add(task)
        task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Event subscriber failed", exc_info=exc)
