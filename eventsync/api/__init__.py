"""HTTP surface for eventsync.

Provides the sync exchange and the integration export endpoints using
FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]
