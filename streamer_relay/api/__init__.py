"""api: FastAPI document endpoints, change feed and static hosting."""
from .server import create_app

__all__ = ["create_app"]
