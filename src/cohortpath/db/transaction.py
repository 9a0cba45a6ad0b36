"""Transaction boundary shared by every public engine operation.

The outermost ``@atomic`` call (or ``unit_of_work`` block) on a session owns
the transaction: it commits on success and rolls back on any exception.
Nested calls join it. Events queued during the transaction are dispatched
only after the commit and dropped on rollback.
"""

from __future__ import annotations

import functools
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

if TYPE_CHECKING:
    from cohortpath.events.bus import EventBus
    from cohortpath.events.schemas import ProgressionEvent

DEPTH_KEY = "cohortpath.atomic_depth"
PENDING_EVENTS_KEY = "cohortpath.pending_events"

T = TypeVar("T")


def in_transaction(db: AsyncSession) -> bool:
    """True while an atomic block is open on this session."""
    return db.info.get(DEPTH_KEY, 0) > 0


def queue_event(db: AsyncSession, bus: EventBus, event: ProgressionEvent) -> None:
    """Hold an event until the enclosing transaction commits."""
    db.info.setdefault(PENDING_EVENTS_KEY, []).append((bus, event))


async def _dispatch_pending(db: AsyncSession) -> None:
    pending = db.info.pop(PENDING_EVENTS_KEY, [])
    for bus, event in pending:
        await bus.dispatch(event)


@asynccontextmanager
async def unit_of_work(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Open (or join) the transaction boundary on ``db``."""
    depth = db.info.get(DEPTH_KEY, 0)
    db.info[DEPTH_KEY] = depth + 1
    try:
        yield db
        if depth == 0:
            await db.commit()
    except BaseException:
        db.info[DEPTH_KEY] = depth
        if depth == 0:
            db.info.pop(PENDING_EVENTS_KEY, None)
            await db.rollback()
        raise
    db.info[DEPTH_KEY] = depth
    if depth == 0:
        await _dispatch_pending(db)


def atomic(method: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Run a service method inside ``unit_of_work(self.db)``."""

    @functools.wraps(method)
    async def wrapper(self: Any, *args: Any, **kwargs: Any) -> T:
        async with unit_of_work(self.db):
            return await method(self, *args, **kwargs)

    return wrapper

