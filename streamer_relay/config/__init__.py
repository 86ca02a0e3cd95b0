"""config: Settings, env loading, YAML/JSON config."""
from .settings import ConfigParseFailure, OBSSettings, ServerSettings, Settings

__all__ = ["ConfigParseFailure", "OBSSettings", "ServerSettings", "Settings"]
