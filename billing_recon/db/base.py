"""Shared SQLAlchemy base and database lifecycle.

The engine and session factory are created once by the process entry point
(app lifespan or batch script) and passed to the components that need them.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


@dataclass
class Database:
    """Engine plus the session factory bound to it."""

    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]

    async def dispose(self) -> None:
        """Dispose of the engine and release all connections."""
        await self.engine.dispose()


async def open_database(url: str, echo: bool = False, create_tables: bool = True) -> Database:
    """Create the async engine and session factory.

    Creates all tables defined via Base.metadata when create_tables is set.
    """
    engine = create_async_engine(url, echo=echo, pool_pre_ping=True)
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    if create_tables:
        # Import all models so metadata is populated before create_all
        import billing_recon.db.models  # noqa: F401

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    return Database(engine=engine, session_factory=session_factory)
