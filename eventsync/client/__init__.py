"""Clients for eventsync servers.

Device-side replica synchronization and the integration export consumer.
"""

from .integration_client import IntegrationClient, IntegrationResult
from .sync_client import SyncClient, SyncResult, SyncStatus

__all__ = [
    "IntegrationClient",
    "IntegrationResult",
    "SyncClient",
    "SyncResult",
    "SyncStatus",
]
