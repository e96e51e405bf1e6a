"""Sync exchange: push a batch, then pull everything the caller lacks."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..models import Event, format_timestamp, utcnow
from ..sanitize import parse_timestamp, sanitize_incoming_event
from ..store import EventStore, StoreError
from .feed import ChangeFeed
from .merge import MergeEngine

logger = logging.getLogger(__name__)


class SyncRequestError(ValueError):
    """The request was rejected before touching the store."""

    def __init__(self, code: str, message: str | None = None):
        super().__init__(message or code)
        self.code = code


class SyncFailed(RuntimeError):
    """The exchange failed in the store; the caller should retry the batch."""

    code = "sync_failed"


@dataclass
class SyncResponse:
    """Result of one sync exchange."""

    events: list[Event] = field(default_factory=list)
    server_time: datetime | None = None
    merged: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": [e.to_dict() for e in self.events],
            "serverTime": format_timestamp(self.server_time or utcnow()),
        }


def parse_cursor(since: Any) -> datetime | None:
    """Validate the optional ``since`` cursor of a sync request.

    Raises:
        SyncRequestError: If a cursor was sent but is not a valid instant.
    """
    if since is None:
        return None
    cursor = parse_timestamp(since)
    if cursor is None:
        raise SyncRequestError("invalid_since", f"Invalid since cursor: {since!r}")
    return cursor


def sanitize_batch(events: Any, now: datetime | None = None) -> list[Event]:
    """Sanitize a raw batch, dropping entries without a usable id."""
    if not isinstance(events, list):
        return []
    now = now or utcnow()
    batch = []
    for raw in events:
        event = sanitize_incoming_event(raw, now)
        if event is not None:
            batch.append(event)
    return batch


class SyncService:
    """Orchestrates one exchange: validate, merge, cursor, feed.

    The caller must use ``server_time`` from the response as its next
    ``since``, never its own clock. The cursor is taken after the merge and
    before the feed is read, so server-stamped changes that land while the
    feed is being read are returned again on the next exchange rather than
    lost.
    """

    def __init__(self, store: EventStore):
        self.store = store
        self.merge = MergeEngine(store)
        self.feed = ChangeFeed(store)

    def sync(
        self,
        tenant_id: str,
        since: Any = None,
        events: Any = None,
    ) -> SyncResponse:
        """Run one sync exchange.

        Args:
            tenant_id: Tenant the caller belongs to.
            since: Raw cursor from the request (ISO-8601 string or None).
            events: Raw list of event payloads pushed by the caller.

        Returns:
            SyncResponse with the pull delta and the next cursor.

        Raises:
            SyncRequestError: If ``since`` is invalid.
            SyncFailed: If the store failed; nothing from the batch was kept.
        """
        cursor = parse_cursor(since)
        batch = sanitize_batch(events)

        pushed: dict[str, datetime] = {}
        for event in batch:
            current = pushed.get(event.id)
            if current is None or event.updated_at > current:
                pushed[event.id] = event.updated_at

        try:
            merged = self.merge.apply(tenant_id, batch)
            server_time = utcnow()
            changes = self.feed.changes_since(tenant_id, cursor, pushed)
        except StoreError as e:
            logger.error(f"Sync failed for tenant {tenant_id}: {e}")
            raise SyncFailed(str(e)) from e

        logger.info(
            f"Sync for {tenant_id}: merged={merged}, returned={len(changes)}, "
            f"since={format_timestamp(cursor) if cursor else None}"
        )
        return SyncResponse(events=changes, server_time=server_time, merged=merged)
