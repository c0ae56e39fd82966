"""Async engine and session factory for the intent store."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

APPLICATION_NAME = "ensmarket"


def setup_db_session(
    db_url: str, pool_size: int = 20, application_name: str = APPLICATION_NAME
) -> async_sessionmaker[AsyncSession]:
    """Create the async session factory.

    Args:
        db_url: PostgreSQL connection URL (postgresql+psycopg://...)
        pool_size: Connections kept in the pool; the advisory-lock coordinator checks
            out one extra connection per running batch job
        application_name: Shown in pg_stat_activity, so lock holders can be traced
            back to a replica

    Returns:
        Session factory; its engine is reachable through get_engine()
    """
    engine = create_async_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=0,
        pool_pre_ping=True,
        echo=False,  # SQL goes through structlog, not the engine logger
        connect_args={"application_name": application_name},
    )
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine(session_factory: async_sessionmaker[AsyncSession]) -> AsyncEngine:
    """Return the engine a session factory is bound to."""
    return session_factory.kw["bind"]
