"""Durable event storage.

Provides the SQLite event table every sync participant reads and writes.
"""

from .event_store import EventStore, StoreError

__all__ = ["EventStore", "StoreError"]
