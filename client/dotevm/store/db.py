"""SQLite engine, session factory and startup migrations."""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Set

from sqlalchemy import Engine, create_engine, event, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from dotevm.crypto.cipher import generate_salt
from dotevm.store.models import Base, EnvVersion

log = logging.getLogger(__name__)


def create_store_engine(db_path: Path) -> Engine:
    """Engine for the local database with transactional DDL enabled."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(f"sqlite:///{db_path}", echo=False)

    # pysqlite commits implicitly before DDL; take over BEGIN so migrations can roll back
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(engine, class_=Session, expire_on_commit=False, autoflush=False)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Yield a session; commit on success, roll back and re-raise on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# --- Migrations (each step is idempotent) ---


def _column_names(conn, table: str) -> Set[str]:
    # SQLite returns (cid, name, type, notnull, dflt_value, pk)
    rows = conn.execute(text(f'PRAGMA table_info("{table}")')).fetchall()
    return {row[1] for row in rows}


def _add_column_if_missing(conn, table: str, column: str, ddl: str) -> None:
    if column in _column_names(conn, table):
        return
    log.info("Migration: adding %s.%s", table, column)
    conn.execute(text(f'ALTER TABLE "{table}" ADD COLUMN {column} {ddl}'))


def _add_encryption_salt(conn) -> None:
    """Add users.encryption_salt and give every user without one a salt."""
    _add_column_if_missing(conn, "users", "encryption_salt", "TEXT")
    rows = conn.execute(
        text("SELECT id FROM users WHERE encryption_salt IS NULL OR encryption_salt = ''")
    ).fetchall()
    for (user_id,) in rows:
        conn.execute(
            text("UPDATE users SET encryption_salt = :salt WHERE id = :id"),
            {"salt": generate_salt(), "id": user_id},
        )
    if rows:
        log.info("Migration: generated encryption salt for %d user(s)", len(rows))


def _add_sync_columns(conn) -> None:
    _add_column_if_missing(conn, "users", "last_login", "DATETIME")
    _add_column_if_missing(conn, "users", "synced_to_server", "BOOLEAN NOT NULL DEFAULT 0")
    _add_column_if_missing(conn, "env_versions", "synced_to_server", "BOOLEAN NOT NULL DEFAULT 0")
    _add_column_if_missing(conn, "env_versions", "is_rollback", "BOOLEAN NOT NULL DEFAULT 0")
    _add_column_if_missing(conn, "rollback_history", "synced_to_server", "BOOLEAN NOT NULL DEFAULT 0")


def _has_global_token_unique(conn) -> bool:
    """True if env_versions still carries the old unique index on version_token alone."""
    # index_list rows: (seq, name, unique, origin, partial)
    for row in conn.execute(text("PRAGMA index_list(env_versions)")).fetchall():
        if not row[2]:
            continue
        cols = [r[2] for r in conn.execute(text(f"PRAGMA index_info(\"{row[1]}\")")).fetchall()]
        if cols == ["version_token"]:
            return True
    return False


def _widen_version_token_unique(conn) -> None:
    """Rebuild env_versions so version_token is unique per file instead of globally."""
    if not _has_global_token_unique(conn):
        return
    log.info("Migration: widening env_versions unique constraint to (env_file_id, version_token)")
    conn.execute(text("ALTER TABLE env_versions RENAME TO env_versions_legacy"))
    EnvVersion.__table__.create(conn)
    wanted = {c.name for c in EnvVersion.__table__.columns}
    shared = [c for c in _column_names(conn, "env_versions_legacy") if c in wanted]
    cols = ", ".join(shared)
    conn.execute(text(f"INSERT INTO env_versions ({cols}) SELECT {cols} FROM env_versions_legacy"))
    conn.execute(text("DROP TABLE env_versions_legacy"))


_MIGRATIONS: List[Callable] = [
    _add_encryption_salt,
    _add_sync_columns,
    _widen_version_token_unique,
]


def _fallback_schema(engine: Engine) -> None:
    """Move tables that do not match the models aside and recreate them empty."""
    with engine.begin() as conn:
        existing = set(inspect(conn).get_table_names())
        suffix = int(time.time())
        for table in Base.metadata.sorted_tables:
            if table.name not in existing:
                continue
            if {c.name for c in table.columns} <= _column_names(conn, table.name):
                continue
            backup = f"{table.name}_backup_{suffix}"
            log.warning("Fallback schema: moving %s to %s", table.name, backup)
            conn.execute(text(f'ALTER TABLE "{table.name}" RENAME TO "{backup}"'))
        Base.metadata.create_all(conn)


def init_schema(engine: Engine) -> bool:
    """
    Create tables and run migrations in one transaction.
    Returns False when migrations failed and the fallback schema was applied.
    """
    try:
        with engine.begin() as conn:
            Base.metadata.create_all(conn)
            for step in _MIGRATIONS:
                step(conn)
        return True
    except SQLAlchemyError as e:
        log.error("Schema migration failed, applying fallback schema: %s", e)
        _fallback_schema(engine)
        return False
