"""Process lifecycle: logging, database and Redis setup for the engine."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog

from cohortpath.clock import Clock, utcnow
from cohortpath.config import Settings, get_settings
from cohortpath.database import close_db, create_tables, get_session, init_db
from cohortpath.engine import ProgressionEngine
from cohortpath.logs import setup_logging, teardown_logging
from cohortpath.redis_client import close_redis, get_redis, init_redis

logger = structlog.get_logger(__name__)


async def startup(settings: Settings | None = None, *, create_schema: bool = False) -> Settings:
    """Configure logging and open the database and Redis connections."""
    settings = settings or get_settings()
    setup_logging(settings)
    await init_db(settings.database_url, echo=settings.database_echo)
    if create_schema:
        await create_tables()
    if settings.events_enabled:
        await init_redis(settings.redis_url)
    logger.info("engine_started", version=settings.app_version, environment=settings.environment)
    return settings


async def shutdown() -> None:
    await close_db()
    await close_redis()
    logger.info("engine_stopped")
    teardown_logging()


async def iter_engines(clock: Clock = utcnow) -> AsyncGenerator[ProgressionEngine, None]:
    """Yield an engine bound to a fresh session, one per request."""
    async for session in get_session():
        yield ProgressionEngine(session, redis=get_redis(), clock=clock)


@asynccontextmanager
async def lifespan(settings: Settings | None = None) -> AsyncGenerator[Settings, None]:
    """Startup and shutdown lifecycle."""
    settings = await startup(settings)
    try:
        yield settings
    finally:
        await shutdown()
