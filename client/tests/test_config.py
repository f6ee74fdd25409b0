"""Tests for client configuration paths and server URL."""

from pathlib import Path

from dotevm import config


def test_paths_live_under_config_dir(_isolated_config: Path) -> None:
    assert config.get_config_path() == _isolated_config / "config.json"
    assert config.get_database_path() == _isolated_config / "evm.db"
    assert config.get_session_path() == _isolated_config / "session.json"
    staging = config.get_staging_path(7)
    assert staging == _isolated_config / "projects" / "7" / "staging.json"
    assert staging.parent.is_dir()


def test_server_url_default() -> None:
    assert config.get_server_url() == config.DEFAULT_SERVER_URL


def test_server_url_from_config_file() -> None:
    config.set_server_url("https://evm.example.com/ ")
    assert config.get_server_url() == "https://evm.example.com"


def test_env_overrides_config_file(monkeypatch) -> None:
    config.set_server_url("https://from-file.example.com")
    monkeypatch.setenv("EVM_SERVER_URL", "https://from-env.example.com/")
    assert config.get_server_url() == "https://from-env.example.com"


def test_unreadable_config_falls_back_to_default() -> None:
    config.get_config_path().write_text("[not, a, dict]", encoding="utf-8")
    assert config.get_server_url() == config.DEFAULT_SERVER_URL
    config.get_config_path().write_text("{broken", encoding="utf-8")
    assert config.get_server_url() == config.DEFAULT_SERVER_URL
