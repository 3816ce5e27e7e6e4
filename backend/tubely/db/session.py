from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from tubely.core.config import get_settings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        options: dict = {"echo": settings.debug and settings.env == "local"}
        if settings.db_url.startswith("sqlite"):
            # aiosqlite connections are bound to the loop that opened them
            options["poolclass"] = NullPool
        else:
            options["pool_pre_ping"] = True
        _engine = create_async_engine(settings.db_url, **options)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


def reset_session_factory() -> None:
    """Drop the cached engine; tests call this after changing settings."""
    global _engine, _session_factory
    _engine = None
    _session_factory = None

