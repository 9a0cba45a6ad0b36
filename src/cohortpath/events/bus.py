"""Completion event bus: fire-and-forget notifications for side effects.

Nothing the engine's invariants depend on is routed through here. Handlers
and the Redis publish may fail; failures are logged and never reach the
operation that emitted the event.
"""

from __future__ import annotations

import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from cohortpath.clock import Clock, utcnow
from cohortpath.config import get_settings
from cohortpath.db.transaction import in_transaction, queue_event
from cohortpath.events.schemas import EVENT_NAMES, ProgressionEvent

logger = structlog.get_logger(__name__)

Handler = Callable[[ProgressionEvent], Awaitable[None] | None]
ALL_EVENTS = "*"


class EventBus:
    """Dispatches progression events to in-process subscribers and Redis."""

    def __init__(self, redis: object | None = None, clock: Clock = utcnow) -> None:
        settings = get_settings()
        self.redis = redis
        self.clock = clock
        self.channel_prefix = settings.event_channel_prefix
        self.publish_enabled = settings.events_enabled
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, name: str, handler: Handler) -> None:
        """Register a handler for one event name, or ``"*"`` for all."""
        if name != ALL_EVENTS and name not in EVENT_NAMES:
            raise ValueError(f"Unknown event: {name}")
        self._handlers[name].append(handler)

    async def emit(self, db: AsyncSession, name: str, user_id: int, **data: Any) -> ProgressionEvent:
        """Emit an event; deferred until commit when a transaction is open."""
        event = ProgressionEvent(name=name, user_id=user_id, occurred_at=self.clock(), data=data)
        if in_transaction(db):
            queue_event(db, self, event)
        else:
            await self.dispatch(event)
        return event

    async def dispatch(self, event: ProgressionEvent) -> None:
        """Deliver one event now."""
        for handler in [*self._handlers.get(event.name, []), *self._handlers.get(ALL_EVENTS, [])]:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("event_handler_failed", event_name=event.name, user_id=event.user_id, exc_info=True)

        if self.redis is None or not self.publish_enabled:
            return
        try:
            await self.redis.publish(  # type: ignore[attr-defined]
                f"{self.channel_prefix}:{event.name}",
                event.model_dump_json(),
            )
        except Exception:
            logger.warning("event_publish_failed", event_name=event.name, user_id=event.user_id, exc_info=True)
