"""Tests for the local store: CRUD results, cascades, pending queue, migrations."""

import sqlite3
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import func, select, text

from dotevm.crypto.cipher import generate_salt
from dotevm.errors import ConstraintError, NotFoundError, ValidationError
from dotevm.store import db as store_db
from dotevm.store.local import LocalStore, RollbackSnapshot, VersionSnapshot
from dotevm.store.models import EnvVersion, RollbackRecord
from dotevm.vcs import VersionControl


def _count(store: LocalStore, model) -> int:
    return store.run("count", lambda s: s.scalar(select(func.count()).select_from(model))).unwrap()


def test_duplicate_user_is_constraint_error(store, user) -> None:
    result = store.create_user(user.email, "x", generate_salt())
    assert not result.ok
    assert isinstance(result.error, ConstraintError)


def test_get_encryption_salt(store, user) -> None:
    assert store.get_encryption_salt(user.email).unwrap() == user.encryption_salt
    missing = store.get_encryption_salt("nobody@example.com")
    assert isinstance(missing.error, NotFoundError)


def test_update_user_rejects_unknown_fields(store, user) -> None:
    rejected = store.update_user(user.id, email="x@example.com")
    assert isinstance(rejected.error, ValidationError)
    assert "email" in str(rejected.error)
    assert store.get_user_by_email("x@example.com").error is not None
    updated = store.update_user(user.id, synced_to_server=True).unwrap()
    assert updated.synced_to_server is True


def test_project_names_unique_per_user(store, user, project) -> None:
    dup = store.create_project(user.id, "api")
    assert isinstance(dup.error, ConstraintError)
    other = store.create_user("other@example.com", "x", generate_salt()).unwrap()
    assert store.create_project(other.id, "api").ok


def test_get_project_by_name_not_found(store, user) -> None:
    result = store.get_project_by_name(user.id, "ghost")
    assert not result.ok
    assert isinstance(result.error, NotFoundError)
    with pytest.raises(NotFoundError):
        result.unwrap()


def test_current_project_by_directory_then_first(store, user, project, tmp_path: Path) -> None:
    other_dir = tmp_path / "other"
    other_dir.mkdir()
    other = store.create_project(user.id, "web", str(other_dir.resolve())).unwrap()
    assert store.get_current_project(user.id, other_dir).unwrap().id == other.id
    assert store.get_current_project(user.id, tmp_path).unwrap().id == project.id


def test_current_project_none(store, user, tmp_path: Path) -> None:
    result = store.get_current_project(user.id, tmp_path)
    assert isinstance(result.error, NotFoundError)


def test_rename_project_clash(store, user, project) -> None:
    store.create_project(user.id, "web").unwrap()
    assert isinstance(store.rename_project(project.id, "web").error, ConstraintError)
    assert store.rename_project(project.id, "backend").unwrap().name == "backend"


def test_delete_project_cascades(store, session, project) -> None:
    vcs = VersionControl(store, session)
    vcs.commit(project, ".env", "A=1").unwrap()
    vcs.commit(project, ".env", "A=2").unwrap()
    first = store.list_versions(store.get_env_file_by_name(project.id, ".env").unwrap().id).unwrap()[-1]
    env_file = store.get_env_file_by_name(project.id, ".env").unwrap()
    vcs.rollback(env_file, first.version_token).unwrap()
    vcs.commit(project, ".env.prod", "B=1").unwrap()

    assert store.delete_project(project.id).unwrap() == 2
    assert _count(store, EnvVersion) == 0
    assert _count(store, RollbackRecord) == 0
    assert store.list_env_files(project.id).unwrap() == []
    assert isinstance(store.get_project(project.id).error, NotFoundError)


def test_delete_env_file_cascades(store, session, project) -> None:
    vcs = VersionControl(store, session)
    vcs.commit(project, ".env", "A=1").unwrap()
    vcs.commit(project, ".env.prod", "B=1").unwrap()
    env_file = store.get_env_file_by_name(project.id, ".env").unwrap()
    store.delete_env_file(env_file.id).unwrap()
    assert [f.name for f in store.list_env_files(project.id).unwrap()] == [".env.prod"]
    assert _count(store, EnvVersion) == 1
    assert isinstance(store.delete_env_file(env_file.id).error, NotFoundError)


def test_rename_env_file_clash(store, session, project) -> None:
    vcs = VersionControl(store, session)
    vcs.commit(project, ".env", "A=1").unwrap()
    vcs.commit(project, ".env.prod", "B=1").unwrap()
    env_file = store.get_env_file_by_name(project.id, ".env").unwrap()
    assert isinstance(store.rename_env_file(env_file.id, ".env.prod").error, ConstraintError)
    assert store.rename_env_file(env_file.id, ".env.local").unwrap().name == ".env.local"


def test_find_versions_by_prefix_escapes_wildcards(store, session, project) -> None:
    VersionControl(store, session).commit(project, ".env", "A=1").unwrap()
    assert store.find_versions_by_prefix(project.id, "%").unwrap() == []
    assert store.find_versions_by_prefix(project.id, "_").unwrap() == []
    assert len(store.find_versions_by_prefix(project.id, "").unwrap()) == 1


def test_pending_operations_fifo_and_dedupe(store, user) -> None:
    first = store.add_pending_operation(user.id, "SYNC", "PROJECT", '{"kind":"sync","project_name":"a"}', deduplicate=True).unwrap()
    again = store.add_pending_operation(user.id, "SYNC", "PROJECT", '{"kind":"sync","project_name":"a"}', deduplicate=True).unwrap()
    second = store.add_pending_operation(user.id, "SYNC", "PROJECT", '{"kind":"sync","project_name":"b"}').unwrap()
    assert again.id == first.id
    ops = store.list_pending_operations(user.id).unwrap()
    assert [op.id for op in ops] == [first.id, second.id]
    store.remove_pending_operation(first.id).unwrap()
    assert [op.id for op in store.list_pending_operations(user.id).unwrap()] == [second.id]


def test_unsynced_versions_and_marking(store, session, project) -> None:
    vcs = VersionControl(store, session)
    v1 = vcs.commit(project, ".env", "A=1").unwrap()
    v2 = vcs.commit(project, ".env", "A=2").unwrap()
    env_file = store.get_env_file_by_name(project.id, ".env").unwrap()
    assert [v.id for v in store.list_unsynced_versions(env_file.id).unwrap()] == [v1.id, v2.id]
    store.mark_version_synced(v1.id).unwrap()
    assert [v.id for v in store.list_unsynced_versions(env_file.id).unwrap()] == [v2.id]


def test_restore_file_history_replaces_everything(store, session, project) -> None:
    vcs = VersionControl(store, session)
    vcs.commit(project, ".env", "A=local").unwrap()
    sealed = vcs.cipher.encrypt("A=remote")
    t0 = datetime(2024, 1, 1, 12, 0, 0)
    versions = [
        VersionSnapshot("b" * 40, sealed.ciphertext, sealed.iv, sealed.tag, "second", "x@example.com", t0 + timedelta(hours=1)),
        VersionSnapshot("a" * 40, sealed.ciphertext, sealed.iv, sealed.tag, "first", "x@example.com", t0),
    ]
    rollbacks = [RollbackSnapshot("b" * 40, "a" * 40, "why", "x@example.com", t0 + timedelta(hours=2))]
    env_file = store.restore_file_history(
        project.id, ".env", sealed.ciphertext, sealed.iv, sealed.tag,
        updated_at=t0 + timedelta(hours=2), versions=versions, rollbacks=rollbacks,
    ).unwrap()

    history = store.list_versions(env_file.id).unwrap()
    assert [v.version_token[0] for v in history] == ["b", "a"]
    newest, oldest = history
    assert oldest.parent_version_id is None
    assert newest.parent_version_id == oldest.id
    assert env_file.current_version_id == newest.id
    assert all(v.synced_to_server for v in history)
    assert [name for _, name in store.project_rollbacks(project.id).unwrap()] == [".env"]
    assert vcs.decrypt_file(store.get_env_file(env_file.id).unwrap()) == "A=remote"


# --- Migrations ---

_LEGACY_SCHEMA = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY,
    email VARCHAR(255) NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    created_at DATETIME NOT NULL
);
CREATE TABLE projects (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id),
    name VARCHAR(255) NOT NULL,
    description TEXT,
    directory_path TEXT,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL,
    UNIQUE (user_id, name)
);
CREATE TABLE env_files (
    id INTEGER PRIMARY KEY,
    project_id INTEGER NOT NULL REFERENCES projects(id),
    name VARCHAR(255) NOT NULL,
    encrypted_content TEXT NOT NULL,
    iv VARCHAR(64) NOT NULL,
    tag VARCHAR(64) NOT NULL,
    current_version_id INTEGER,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL,
    UNIQUE (project_id, name)
);
CREATE TABLE env_versions (
    id INTEGER PRIMARY KEY,
    env_file_id INTEGER NOT NULL REFERENCES env_files(id),
    version_token VARCHAR(64) NOT NULL UNIQUE,
    encrypted_content TEXT NOT NULL,
    iv VARCHAR(64) NOT NULL,
    tag VARCHAR(64) NOT NULL,
    commit_message TEXT,
    author_email VARCHAR(255) NOT NULL,
    parent_version_id INTEGER,
    created_at DATETIME NOT NULL
);
CREATE TABLE rollback_history (
    id INTEGER PRIMARY KEY,
    env_file_id INTEGER NOT NULL REFERENCES env_files(id),
    from_version_token VARCHAR(64) NOT NULL,
    to_version_token VARCHAR(64) NOT NULL,
    reason TEXT,
    performed_by VARCHAR(255) NOT NULL,
    created_at DATETIME NOT NULL
);
INSERT INTO users VALUES (1, 'old@example.com', 'hash', '2023-01-01 00:00:00.000000');
INSERT INTO projects VALUES (1, 1, 'legacy', NULL, NULL, '2023-01-01 00:00:00.000000', '2023-01-01 00:00:00.000000');
INSERT INTO env_files VALUES (1, 1, '.env', 'aa', 'bb', 'cc', 1, '2023-01-01 00:00:00.000000', '2023-01-01 00:00:00.000000');
INSERT INTO env_files VALUES (2, 1, '.env.prod', 'aa', 'bb', 'cc', NULL, '2023-01-01 00:00:00.000000', '2023-01-01 00:00:00.000000');
INSERT INTO env_versions VALUES (1, 1, 'shared-token', 'aa', 'bb', 'cc', 'old commit', 'old@example.com', NULL, '2023-01-01 00:00:00.000000');
"""


def _legacy_db(path: Path) -> Path:
    conn = sqlite3.connect(path)
    conn.executescript(_LEGACY_SCHEMA)
    conn.commit()
    conn.close()
    return path


def _tables(path: Path) -> set:
    conn = sqlite3.connect(path)
    try:
        return {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    finally:
        conn.close()


def test_migrates_legacy_database(tmp_path: Path) -> None:
    store = LocalStore(_legacy_db(tmp_path / "legacy.db"))
    try:
        assert store.migrated is True
        user = store.get_user_by_email("old@example.com").unwrap()
        assert user.encryption_salt
        assert user.synced_to_server is False
        version = store.get_version_by_token(1, "shared-token").unwrap()
        assert version.commit_message == "old commit"
        assert version.is_rollback is False
        assert version.synced_to_server is False

        # the same token may now exist once per file
        def _insert_same_token(session):
            session.add(
                EnvVersion(
                    env_file_id=2,
                    version_token="shared-token",
                    encrypted_content="aa",
                    iv="bb",
                    tag="cc",
                    author_email="old@example.com",
                )
            )

        assert store.run("insert", _insert_same_token).ok
        assert "env_versions_legacy" not in _tables(tmp_path / "legacy.db")
    finally:
        store.close()


def test_migrations_are_idempotent(tmp_path: Path) -> None:
    path = _legacy_db(tmp_path / "legacy.db")
    LocalStore(path).close()
    salt = None
    for _ in range(2):
        store = LocalStore(path)
        assert store.migrated is True
        current = store.get_encryption_salt("old@example.com").unwrap()
        assert salt in (None, current)
        salt = current
        store.close()


def test_failed_migration_falls_back_to_safe_schema(tmp_path: Path, monkeypatch) -> None:
    path = _legacy_db(tmp_path / "legacy.db")

    def _broken(conn):
        conn.execute(text("SELECT * FROM no_such_table"))

    monkeypatch.setattr(store_db, "_MIGRATIONS", [_broken])
    store = LocalStore(path)
    try:
        assert store.migrated is False
        tables = _tables(path)
        # users lacked columns the models need, so it was moved aside with its data
        assert any(t.startswith("users_backup_") for t in tables)
        user = store.create_user("new@example.com", "x", generate_salt()).unwrap()
        assert user.id is not None
    finally:
        store.close()


def test_fresh_database_with_failing_migration_is_usable(tmp_path: Path, monkeypatch) -> None:
    def _broken(conn):
        raise store_db.SQLAlchemyError("boom")

    monkeypatch.setattr(store_db, "_MIGRATIONS", [_broken])
    store = LocalStore(tmp_path / "fresh.db")
    try:
        assert store.migrated is False
        assert store.create_user("a@example.com", "x", generate_salt()).ok
    finally:
        store.close()
