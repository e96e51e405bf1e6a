"""Last-write-wins merge of client event batches into the event store.

Each row is resolved on its own ``updated_at``: an incoming row replaces the
stored one only when it is strictly newer, and then as a whole. The
integration marker is the one exception and follows its own rule (see
:class:`MergeEngine`).
"""

import logging
from collections.abc import Iterable

from ..models import Event, format_timestamp
from ..sanitize import ensure_duration
from ..store import EventStore

logger = logging.getLogger(__name__)

# Columns replaced as a unit when the incoming row is newer.
GATED_COLUMNS = (
    "title",
    "notes",
    "event_date",
    "event_type",
    "difficulty",
    "duration_minutes",
    "start_at",
    "end_at",
    "color",
    "status",
    "provider",
    "account_id",
    "google_id",
    "outlook_id",
    "ics_uid",
    "created_at",
    "updated_at",
)

_NEWER = "excluded.updated_at > app_events.updated_at"

# SQLite evaluates every SET expression against the pre-update row, so the
# updated_at assignment does not affect the other comparisons.
UPSERT_SQL = (
    """
    INSERT INTO app_events (
        tenant_id, id, title, notes, event_date, event_type, difficulty,
        duration_minutes, start_at, end_at, color, status, provider,
        account_id, google_id, outlook_id, ics_uid, created_at, updated_at,
        integration_date
    ) VALUES (
        :tenant_id, :id, :title, :notes, :event_date, :event_type, :difficulty,
        :duration_minutes, :start_at, :end_at, :color, :status, :provider,
        :account_id, :google_id, :outlook_id, :ics_uid, :created_at, :updated_at,
        :integration_date
    )
    ON CONFLICT(tenant_id, id) DO UPDATE SET
    """
    + ",\n".join(
        f"        {column} = CASE WHEN {_NEWER} "
        f"THEN excluded.{column} ELSE app_events.{column} END"
        for column in GATED_COLUMNS
    )
    + """,
        integration_date = CASE
            WHEN :integration_date_provided = 1 THEN excluded.integration_date
            ELSE app_events.integration_date
        END
    """
)


def _row_params(tenant_id: str, event: Event) -> dict:
    provided = event.integration_date_provided
    integration_date = event.integration_date if provided else None
    return {
        "tenant_id": tenant_id,
        "id": event.id,
        "title": event.title,
        "notes": event.notes,
        "event_date": event.date,
        "event_type": event.type,
        "difficulty": event.difficulty,
        "duration_minutes": ensure_duration(event.duration),
        "start_at": event.start,
        "end_at": event.end,
        "color": event.color,
        "status": event.status,
        "provider": event.provider,
        "account_id": event.account_id,
        "google_id": event.google_id,
        "outlook_id": event.outlook_id,
        "ics_uid": event.ics_uid,
        "created_at": format_timestamp(event.created_at or event.updated_at),
        "updated_at": format_timestamp(event.updated_at),
        "integration_date": (
            format_timestamp(integration_date) if integration_date else None
        ),
        "integration_date_provided": 1 if provided else 0,
    }


class MergeEngine:
    """Applies client batches to the event store.

    Per row:

    - Unknown id: the row is inserted as given.
    - Known id: every column except ``integration_date`` is replaced if and
      only if the incoming ``updated_at`` is strictly greater than the
      stored one. Equal or older pushes change nothing.
    - ``integration_date``: an explicitly provided value (including None)
      always wins regardless of timestamps; otherwise the stored marker is
      kept, even when the rest of the row is replaced.

    A batch is one transaction. The per-row upsert is the database's native
    ``INSERT ... ON CONFLICT DO UPDATE``, so two batches touching the same id
    cannot interleave within a row.
    """

    def __init__(self, store: EventStore):
        self.store = store

    def apply(self, tenant_id: str, batch: Iterable[Event]) -> int:
        """Merge a batch of sanitized events.

        Args:
            tenant_id: Tenant that owns the rows.
            batch: Events to merge. Events without an id are skipped.

        Returns:
            Number of rows processed.

        Raises:
            StoreError: If the transaction failed; nothing was applied and
                the whole batch can be retried.
        """
        params = [
            _row_params(tenant_id, event) for event in batch if event and event.id
        ]
        if not params:
            return 0

        with self.store.transaction() as conn:
            for row in params:
                conn.execute(UPSERT_SQL, row)

        logger.debug(f"Merged {len(params)} events for tenant {tenant_id}")
        return len(params)
