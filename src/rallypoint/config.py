"""Rallypoint configuration management."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from rallypoint.auth.jwt import DEFAULT_SECRET


@dataclass
class Config:
    """Rallypoint configuration."""

    workspace_path: Path = field(default_factory=lambda: Path.home() / ".rallypoint")
    log_level: str = "INFO"
    jwt_secret: str = DEFAULT_SECRET
    token_exp_minutes: int = 60 * 24
    pagination_default: int = 10
    pagination_max: int = 50
    wal_mode: bool = True

    @classmethod
    def load(cls, workspace_path: Path | None = None) -> Config:
        """Load config from defaults, then env vars, then the workspace YAML file."""
        config = cls()

        if workspace_path:
            config.workspace_path = workspace_path

        env_path = os.environ.get("RALLYPOINT_WORKSPACE")
        if env_path and not workspace_path:
            config.workspace_path = Path(env_path)

        env_log = os.environ.get("RALLYPOINT_LOG_LEVEL")
        if env_log:
            config.log_level = env_log

        env_secret = os.environ.get("RALLYPOINT_JWT_SECRET")
        if env_secret:
            config.jwt_secret = env_secret

        config_file = config.workspace_path / "config.yaml"
        if config_file.exists():
            with open(config_file) as f:
                data = yaml.safe_load(f) or {}
            for key, value in data.items():
                if hasattr(config, key) and key != "workspace_path":
                    expected_type = type(getattr(config, key))
                    setattr(config, key, expected_type(value))

        return config

    @property
    def db_path(self) -> Path:
        return self.workspace_path / "rallypoint.db"

    def clamp_limit(self, limit: int | None) -> int:
        """Apply the default page size and cap it at the maximum."""
        if not limit or limit < 1:
            return self.pagination_default
        return min(limit, self.pagination_max)

    def configure_logging(self) -> None:
        logging.basicConfig(
            level=getattr(logging, self.log_level.upper(), logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    def save(self) -> None:
        """Save current config to YAML. The JWT secret is never written."""
        self.workspace_path.mkdir(parents=True, exist_ok=True)
        config_file = self.workspace_path / "config.yaml"
        data = {
            "log_level": self.log_level,
            "token_exp_minutes": self.token_exp_minutes,
            "pagination_default": self.pagination_default,
            "pagination_max": self.pagination_max,
            "wal_mode": self.wal_mode,
        }
        with open(config_file, "w") as f:
            yaml.dump(data, f, default_flow_style=False)
