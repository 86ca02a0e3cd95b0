"""
streamer-relay: control panel server for OBS-driven streams.

Modules:
  store/   revisioned document store with a live change feed
  core/    OBS WebSocket session
  bus/     queue-document command bus, user scripts, OBS state mirror
  api/     FastAPI document endpoints, change feed, static hosting
  config/  settings, env loading, YAML/JSON config
"""

__version__ = "0.4.0"
