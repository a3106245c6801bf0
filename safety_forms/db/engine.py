# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# DESIGN DECISION: Async SQLAlchemy Engine
# FastAPI is an async framework, so we use SQLAlchemy's async engine to avoid
# blocking the event loop during database operations:
# - All DB queries use `await` (e.g., `await session.execute(...)`)
# - We use `asyncpg` as the PostgreSQL driver
#
# COMMIT POLICY:
# Sessions come from async_session_factory() and are managed by the
# tracking store, whose writes happen outside any single request handler
# (pipeline stages, best-effort audit events). Every write commits
# explicitly.
#
# DESIGN DECISION: Lazy engine creation.
# Importing this module must not require a reachable database or the
# asyncpg driver configuration to be valid; the in-memory tracking backend
# never touches it. The engine is built on first use.
# =============================================================================

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from safety_forms.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# - echo=True (debug mode): Logs all SQL statements to stdout.
# - pool_size / max_overflow: modest pool; form processing is dominated by
#   OCR and LLM latency, not database round-trips.
# - pool_pre_ping: drops stale connections after database restarts.
# ---------------------------------------------------------------------------

_async_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_async_engine() -> AsyncEngine:
    """Lazily create and cache the async SQLAlchemy engine."""
    global _async_engine
    if _async_engine is None:
        _async_engine = create_async_engine(
            settings.database_url,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )
    return _async_engine


# ---------------------------------------------------------------------------
# Session Factory
# ---------------------------------------------------------------------------
# - expire_on_commit=False: Prevents SQLAlchemy from marking all loaded
#   objects as "expired" after commit. Without this, accessing any attribute
#   after commit would trigger a new database query — which fails in async
#   context outside of a session.
# ---------------------------------------------------------------------------


def async_session_factory() -> AsyncSession:
    """Open a new self-managed AsyncSession (caller commits)."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_factory()


async def dispose_engine() -> None:
    """Close pooled connections (application shutdown)."""
    global _async_engine, _async_session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
        _async_engine = None
        _async_session_factory = None
