"""Shared fixtures: isolated config dir, in-memory keyring, a store with one user and project."""

from pathlib import Path

import keyring
import keyring.errors
import pytest

from dotevm.crypto.cipher import generate_salt
from dotevm.session import Session
from dotevm.store.local import LocalStore


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path: Path, monkeypatch):
    """Keep config, database and staging files inside the test's tmp dir."""
    config_dir = tmp_path / "config"
    monkeypatch.setenv("EVM_CONFIG_DIR", str(config_dir))
    monkeypatch.delenv("EVM_SERVER_URL", raising=False)
    return config_dir


@pytest.fixture(autouse=True)
def fake_keyring(monkeypatch):
    """Replace the OS keyring with a dict so tests never touch real credentials."""
    secrets = {}

    def _get(service, user):
        return secrets.get((service, user))

    def _set(service, user, value):
        secrets[(service, user)] = value

    def _delete(service, user):
        if (service, user) not in secrets:
            raise keyring.errors.PasswordDeleteError("not found")
        del secrets[(service, user)]

    monkeypatch.setattr(keyring, "get_password", _get)
    monkeypatch.setattr(keyring, "set_password", _set)
    monkeypatch.setattr(keyring, "delete_password", _delete)
    return secrets


@pytest.fixture
def store(tmp_path: Path):
    s = LocalStore(tmp_path / "evm.db")
    yield s
    s.close()


@pytest.fixture
def user(store: LocalStore):
    # tests that check passwords hash their own; bcrypt is slow
    return store.create_user("dev@example.com", "not-a-real-hash", generate_salt()).unwrap()


@pytest.fixture
def session(user) -> Session:
    """Offline session for the fixture user."""
    return Session(email=user.email, user_id=user.id)


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    d = tmp_path / "work"
    d.mkdir()
    return d


@pytest.fixture
def project(store: LocalStore, session: Session, workdir: Path):
    return store.create_project(session.user_id, "api", str(workdir.resolve())).unwrap()
