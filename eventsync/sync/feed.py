"""Change feed: the rows a sync participant has not seen yet."""

import logging
from collections.abc import Mapping
from datetime import datetime

from ..models import Event, format_timestamp
from ..store import EventStore

logger = logging.getLogger(__name__)


class ChangeFeed:
    """Computes pull deltas from the event store."""

    def __init__(self, store: EventStore):
        self.store = store

    def changes_since(
        self,
        tenant_id: str,
        cursor: datetime | None,
        excluding: Mapping[str, datetime] | None = None,
    ) -> list[Event]:
        """Get rows changed after a cursor, oldest change first.

        Args:
            tenant_id: Tenant whose rows are read.
            cursor: Exclusive lower bound on ``updated_at``. None returns
                every row (initial sync).
            excluding: ``id -> updated_at`` the caller pushed in this same
                exchange. A row is withheld only when the pushed version is
                not older than the stored one, so rows another writer has
                since advanced are still returned.

        Returns:
            List of Event objects ordered by ``updated_at`` ascending.
        """
        if cursor is None:
            rows = self.store.query(
                """
                SELECT * FROM app_events
                WHERE tenant_id = ?
                ORDER BY updated_at ASC, id ASC
                """,
                (tenant_id,),
            )
        else:
            rows = self.store.query(
                """
                SELECT * FROM app_events
                WHERE tenant_id = ? AND updated_at > ?
                ORDER BY updated_at ASC, id ASC
                """,
                (tenant_id, format_timestamp(cursor)),
            )

        events = [Event.from_row(row) for row in rows]
        if not excluding:
            return events

        changes = []
        for event in events:
            pushed_at = excluding.get(event.id)
            if pushed_at is not None and pushed_at >= event.updated_at:
                continue
            changes.append(event)

        logger.debug(
            f"Change feed for {tenant_id}: {len(changes)} rows "
            f"({len(events) - len(changes)} echoes suppressed)"
        )
        return changes
