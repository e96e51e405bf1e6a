"""Event synchronization engine.

Last-write-wins merge of client batches, a cursor-based change feed with
echo suppression, and the exchange that combines them.
"""

from .feed import ChangeFeed
from .merge import MergeEngine
from .service import SyncFailed, SyncRequestError, SyncResponse, SyncService

__all__ = [
    "ChangeFeed",
    "MergeEngine",
    "SyncFailed",
    "SyncRequestError",
    "SyncResponse",
    "SyncService",
]
