"""Outbound notification stream for UI and operator subscribers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from tokenwars.models import CompetitionEvent, EventType

logger = logging.getLogger(__name__)

EventCallback = Callable[[CompetitionEvent], Awaitable[None] | None]

DEFAULT_HISTORY_SIZE = 200


class EventBus:
    """Fan out ``CompetitionEvent`` objects to subscribers.

    Synchronous subscribers run inline. Coroutine subscribers are awaited
    when published from async code via ``publish``. A failing subscriber is
    logged and never affects the publisher or the other subscribers.
    """

    def __init__(self, *, history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        self._subscribers: list[EventCallback] = []
        self._history: deque[CompetitionEvent] = deque(maxlen=history_size)

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a subscriber and return a function that removes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def recent(self, limit: int | None = None) -> list[CompetitionEvent]:
        events = list(self._history)
        return events if limit is None else events[-limit:]

    async def publish(self, event: CompetitionEvent) -> None:
        self._history.append(event)
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "Event subscriber %r failed for %s: %s",
                    getattr(callback, "__name__", callback),
                    event.type.value,
                    e,
                )

    async def emit(
        self,
        event_type: EventType,
        competition_id: str | None,
        **payload: Any,
    ) -> CompetitionEvent:
        event = CompetitionEvent(type=event_type, competition_id=competition_id, payload=payload)
        await self.publish(event)
        return event
