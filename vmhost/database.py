"""Database connection and session management."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

# Import models so their tables are registered on the metadata
from vmhost import models  # noqa: F401


def async_database_url(database_url: str) -> str:
    """Select the async driver for a plain database URL."""
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the VM store and the mesh pool."""
    return create_async_engine(
        async_database_url(database_url),
        echo=echo,
        pool_pre_ping=True,
    )


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def create_db_and_tables(engine: AsyncEngine) -> None:
    """Create all database tables."""
    async with engine.begin() as connection:
        await connection.run_sync(SQLModel.metadata.create_all)
