"""
Database configuration and session management.

SQLite (aiosqlite) is the development default; ``postgresql://`` URLs are
rewritten to the asyncpg driver. Only refresh tokens, users, roles and the
auth audit trail live here; revocation and rate-limit state are in the
key-value store.
"""

import logging
from typing import Optional

from sqlalchemy import event, select, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

DEFAULT_ROLES = ("Admin", "StadiumOwner", "Organizer", "User")


def _async_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


database_url = _async_url(settings.DATABASE_URL)
is_sqlite = database_url.startswith("sqlite")

engine_kwargs: dict = {
    "echo": False,
}

if not is_sqlite:
    # pool_pre_ping avoids stale connections after a database restart
    engine_kwargs["pool_pre_ping"] = True
    engine_kwargs["pool_size"] = 5
    engine_kwargs["max_overflow"] = 10

engine = create_async_engine(database_url, **engine_kwargs)


def enable_sqlite_foreign_keys(async_engine: AsyncEngine) -> None:
    """SQLite does not enforce foreign keys unless enabled per connection."""

    @event.listens_for(async_engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


if is_sqlite:
    enable_sqlite_foreign_keys(engine)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    pass


async def get_db():
    """
    Dependency that yields a database session.

    Routes and services call ``commit()`` explicitly; the rollback on
    exception is kept as a safety net.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def seed_roles(session: AsyncSession) -> None:
    """Insert any missing default roles."""
    from models.role import Role

    result = await session.execute(select(Role.name))
    existing = set(result.scalars().all())
    for name in DEFAULT_ROLES:
        if name not in existing:
            session.add(Role(name=name))
    await session.commit()


async def init_db(bind: Optional[AsyncEngine] = None):
    """Create tables and seed the default roles."""
    # Import models so they register with Base.metadata
    from models import auth_audit, refresh_token, role, user  # noqa: F401

    target = bind or engine

    async with target.begin() as conn:
        # Several workers may start at once; serialize DDL on PostgreSQL
        if not target.url.get_backend_name().startswith("sqlite"):
            await conn.execute(text("SELECT pg_advisory_xact_lock(1)"))
            logger.info("Acquired database migration lock")

        await conn.run_sync(Base.metadata.create_all, checkfirst=True)

    session_factory = async_sessionmaker(target, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        await seed_roles(session)

    logger.info("Database initialized successfully")
