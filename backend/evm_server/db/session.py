"""SQLite engine, sessions and startup migrations."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from evm_server.config import get_settings

Base = declarative_base()

_settings = get_settings()
_settings.db_path.parent.mkdir(parents=True, exist_ok=True)
# SQLAlchemy async needs sqlite+aiosqlite and path as URL
_db_url = f"sqlite+aiosqlite:///{_settings.db_path}"
_engine = create_async_engine(_db_url, echo=False)
_async_session = async_sessionmaker(
    _engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


def _add_column_if_missing(conn, table: str, column: str, ddl: str) -> None:
    cursor = conn.execute(text(f"PRAGMA table_info({table})"))
    # SQLite returns (cid, name, type, notnull, dflt_value, pk)
    if any(row[1] == column for row in cursor.fetchall()):
        return
    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))


def _migrate(conn) -> None:
    """Columns added after the first release."""
    _add_column_if_missing(conn, "users", "encryption_salt", "VARCHAR(128)")
    _add_column_if_missing(conn, "env_versions", "is_rollback", "BOOLEAN NOT NULL DEFAULT 0")


async def init_db() -> None:
    """Create tables if they do not exist, then run migrations."""
    # register models with Base
    from evm_server.envs import models as _env_models  # noqa: F401
    from evm_server.users import models as _user_models  # noqa: F401

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(_migrate)


async def close_db() -> None:
    """Close pooled connections."""
    await _engine.dispose()


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session (context manager)."""
    async with _async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async session."""
    async with get_session() as session:
        yield session
