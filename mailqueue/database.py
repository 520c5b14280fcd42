"""Database engine, session factory and UTC helpers for the mail queue."""

import logging
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from mailqueue.config import settings

logger = logging.getLogger(__name__)

_SQLITE_PREFIX = "sqlite+aiosqlite:///"


def _sqlite_file(database_url: str) -> Path | None:
    if not database_url.startswith(_SQLITE_PREFIX):
        return None
    sqlite_path = database_url.removeprefix(_SQLITE_PREFIX)
    if sqlite_path in {"", ":memory:"}:
        return None
    return Path(sqlite_path)


_db_file = _sqlite_file(settings.database_url)
if _db_file is not None and str(_db_file.parent) != ".":
    _db_file.parent.mkdir(parents=True, exist_ok=True)

_is_sqlite = settings.database_url.startswith("sqlite")

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **({"connect_args": {"timeout": 30}} if _is_sqlite else {"pool_pre_ping": True}),
)

if _is_sqlite:
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA busy_timeout=30000;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


async def get_db():
    async with async_session() as session:
        yield session


async def init_db():
    # Import models so their tables are registered on Base.metadata.
    from mailqueue.models import email_history, mail_job  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Mail queue tables ready (%s)", engine.url.render_as_string(hide_password=True))


async def close_db() -> None:
    await engine.dispose()
