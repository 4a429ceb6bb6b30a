"""Async SQLAlchemy engine and session factory.

Services never import the module-level ``async_session``; main.py hands it
to the ledger, and tests build their own with ``make_session_factory``.
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from quicksend.config import settings


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Pool sizing applies to Postgres only; SQLite keeps its default pool."""
    kwargs = {"echo": echo}
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=10, max_overflow=20, pool_pre_ping=True)
    return create_async_engine(url, **kwargs)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Ledger rows are read after the session closes
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.DATABASE_URL)
async_session = make_session_factory(engine)


async def get_db():
    """FastAPI dependency that yields an async DB session."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()
