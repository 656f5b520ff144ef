"""Tests for configuration loading."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from rallypoint.auth.jwt import DEFAULT_SECRET
from rallypoint.config import Config


def test_defaults(config: Config, tmp_path: Path):
    assert config.workspace_path == tmp_path
    assert config.db_path == tmp_path / "rallypoint.db"
    assert config.pagination_default == 10
    assert config.pagination_max == 50
    assert config.wal_mode is True


def test_load_from_yaml(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("RALLYPOINT_LOG_LEVEL", raising=False)
    (tmp_path / "config.yaml").write_text(
        yaml.dump({"log_level": "DEBUG", "pagination_max": "25", "unknown_key": 1})
    )
    config = Config.load(tmp_path)
    assert config.log_level == "DEBUG"
    assert config.pagination_max == 25
    assert not hasattr(config, "unknown_key")


def test_env_overrides(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("RALLYPOINT_WORKSPACE", str(tmp_path))
    monkeypatch.setenv("RALLYPOINT_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("RALLYPOINT_JWT_SECRET", "s3cret")
    config = Config.load()
    assert config.workspace_path == tmp_path
    assert config.log_level == "WARNING"
    assert config.jwt_secret == "s3cret"


def test_save_round_trip_without_secret(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("RALLYPOINT_JWT_SECRET", raising=False)
    config = Config(workspace_path=tmp_path, token_exp_minutes=30, jwt_secret="hidden")
    config.save()

    saved = yaml.safe_load((tmp_path / "config.yaml").read_text())
    assert "jwt_secret" not in saved
    assert saved["token_exp_minutes"] == 30

    loaded = Config.load(tmp_path)
    assert loaded.token_exp_minutes == 30
    assert loaded.jwt_secret == DEFAULT_SECRET


def test_clamp_limit(config: Config):
    assert config.clamp_limit(None) == 10
    assert config.clamp_limit(0) == 10
    assert config.clamp_limit(5) == 5
    assert config.clamp_limit(500) == 50


def test_configure_logging(config: Config, monkeypatch):
    calls = {}
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.update(kwargs))
    config.log_level = "debug"
    config.configure_logging()
    assert calls["level"] == logging.DEBUG
