# =============================================================================
# Database Engine & Session Management — Async SQLAlchemy 2.0
# =============================================================================
#
# One async engine (asyncpg) serves both the FastAPI process and the Celery
# ingestion task. The worker drives it through asyncio.run() and disposes
# the pool afterwards, since pooled connections are bound to the event loop
# that opened them.
#
# SESSION LIFECYCLE:
# 1. Session created (from factory)
# 2. Caller uses session (queries, inserts, etc.)
# 3. Committed on success, rolled back on exception
# 4. Closed when the context manager exits
# =============================================================================

from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from wholesale_rag.config import settings
from wholesale_rag.db.models import Base

# pool_size=5: max persistent connections
# max_overflow=10: extra connections allowed under load (total max = 15)
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
)

# expire_on_commit=False: keep loaded attributes usable after commit
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session that commits on success and rolls back on error.

    Works both as a FastAPI dependency and, via contextlib.asynccontextmanager,
    in the ingestion path.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create the pgvector extension and all tables if missing."""
    async with async_engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
