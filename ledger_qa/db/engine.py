# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# One async SQLAlchemy engine (asyncpg) per process, created lazily on first
# use so importing ledger_qa never opens a connection or requires a database.
#
# SESSION LIFECYCLE (stores use `session_factory()` directly):
#   async with factory() as session:
#       async with session.begin():     # commit on exit, rollback on error
#           ...
#
# DESIGN DECISION: An asyncpg pool is bound to the event loop that created
# it. The Celery task runs each indexing pass under its own asyncio.run(),
# so it calls dispose_engine() at the end of the pass; the next pass builds
# a fresh engine on its own loop.
# =============================================================================

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ledger_qa.config import Settings, settings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_async_engine(config: Settings | None = None) -> AsyncEngine:
    """Lazily create and cache the async engine."""
    global _engine
    if _engine is None:
        cfg = config or settings
        _engine = create_async_engine(
            cfg.database_url,
            echo=cfg.debug,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )
    return _engine


def get_session_factory(config: Settings | None = None) -> async_sessionmaker[AsyncSession]:
    """
    Lazily create and cache the session factory.

    expire_on_commit=False: loaded attributes stay readable after commit,
    outside the session (required in async code).
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_async_engine(config),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def dispose_engine() -> None:
    """Close the pool and forget the cached engine (end of an asyncio.run)."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
