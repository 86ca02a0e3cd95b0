"""core: OBS session management."""
from .obs_client import (
    DEFAULT_EVENT_SUBSCRIPTIONS,
    OBSSession,
    SessionState,
    SurfaceCallFailure,
    SurfaceConnectFailure,
    SurfaceError,
)

__all__ = [
    "DEFAULT_EVENT_SUBSCRIPTIONS",
    "OBSSession",
    "SessionState",
    "SurfaceCallFailure",
    "SurfaceConnectFailure",
    "SurfaceError",
]
