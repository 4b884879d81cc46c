from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from panelreview.config import Settings, get_settings
from panelreview.models import review, storyboard  # noqa: F401


def build_engine(settings: Settings) -> AsyncEngine:
    connect_args = {}
    poolclass = None

    # SQLite 特定配置：使用 NullPool，每个会话独立连接
    if settings.database_url.startswith("sqlite"):
        connect_args = {
            "check_same_thread": False,
            "timeout": 60,  # Increase timeout to reduce lock errors
        }
        poolclass = NullPool

    engine_kwargs = {
        "echo": settings.db_echo,
        "pool_pre_ping": True,
        "connect_args": connect_args,
    }

    if poolclass:
        engine_kwargs["poolclass"] = poolclass
    else:
        engine_kwargs["pool_size"] = 5
        engine_kwargs["max_overflow"] = 10
        engine_kwargs["pool_timeout"] = 30

    engine = create_async_engine(settings.database_url, **engine_kwargs)

    # Enable WAL mode and foreign keys for SQLite
    if settings.database_url.startswith("sqlite"):
        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine: AsyncEngine = build_engine(get_settings())
async_session_maker: async_sessionmaker[AsyncSession] = build_session_maker(engine)


async def init_db(target: AsyncEngine | None = None) -> None:
    """Create all tables."""
    async with (target or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

