"""
config/settings.py: Central configuration via env vars + YAML override.

Priority: ENV > config file > defaults

The config file is config.yaml, or config.json when only that exists.
The JSON form may keep the flat layout older projects use:

    {"port": 2525, "dbpath": "db", "debug": false,
     "obs": {"host": "localhost", "port": 4455, "password": ""}}
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_CANDIDATES = (Path("config.yaml"), Path("config.json"))
SERVER_KEYS = ("host", "port", "dbpath", "debug", "log_level", "api_key", "cors_origins", "project_dir")


class ConfigParseFailure(Exception):
    pass


class _EnvFirstSettings(BaseSettings):
    """Environment beats values passed in from the config file."""

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        return env_settings, init_settings, dotenv_settings, file_secret_settings


class ServerSettings(_EnvFirstSettings):
    host: str = Field("0.0.0.0", description="HTTP server bind host")
    port: int = Field(2525, description="HTTP server port")
    dbpath: Path = Field(Path("db"), description="Folder holding the document store")
    debug: bool = Field(False, description="Verbose logging, including script debug output")
    log_level: str = Field("info", description="Log level")
    api_key: Optional[str] = Field(None, description="Bearer token for API auth (optional)")
    cors_origins: list[str] = Field(["*"], description="CORS allowed origins")
    project_dir: Path = Field(Path("."), description="Project folder with scenes/, assets/, control/")

    model_config = SettingsConfigDict(env_prefix="STREAMER_")

    @property
    def effective_log_level(self) -> str:
        return "debug" if self.debug else self.log_level


class OBSSettings(_EnvFirstSettings):
    host: str = Field("localhost", description="OBS WebSocket host")
    port: int = Field(4455, description="OBS WebSocket port")
    password: str = Field("", description="OBS WebSocket password")

    model_config = SettingsConfigDict(env_prefix="OBS_")


class Settings(BaseSettings):
    server: ServerSettings = Field(default_factory=ServerSettings)
    obs: OBSSettings = Field(default_factory=OBSSettings)
    config_file: Optional[Path] = Field(None, description="Config file the settings were read from")

    model_config = SettingsConfigDict(env_prefix="STREAMER_")

    @staticmethod
    def find_config(config_path: Optional[Path] = None) -> Optional[Path]:
        if config_path:
            return config_path
        env_path = os.environ.get("STREAMER_CONFIG_FILE")
        if env_path:
            return Path(env_path)
        for candidate in CONFIG_CANDIDATES:
            if candidate.exists():
                return candidate
        return None

    @staticmethod
    def read_config(path: Path) -> dict[str, Any]:
        """Parse a YAML or JSON config file. Raises ConfigParseFailure on bad content."""
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigParseFailure(f"Error parsing {path}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigParseFailure(f"Error parsing {path}: top level must be a mapping")
        return data

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Load settings, merging the config file if present."""
        path = cls.find_config(config_path)
        file_data: dict = {}

        if path is not None and path.exists():
            file_data = cls.read_config(path)

        server_data = {k: file_data[k] for k in SERVER_KEYS if k in file_data}
        server_data.update(file_data.get("server") or {})

        try:
            server = ServerSettings(**server_data)
            obs = OBSSettings(**(file_data.get("obs") or {}))
        except ValidationError as e:
            raise ConfigParseFailure(f"Invalid settings in {path}: {e}") from e

        return cls(server=server, obs=obs, config_file=path)

    def to_yaml(self, path: Path) -> None:
        """Save current settings to YAML."""
        data = {
            "server": {
                **self.server.model_dump(),
                "dbpath": str(self.server.dbpath),
                "project_dir": str(self.server.project_dir),
            },
            "obs": self.obs.model_dump(),
        }
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
