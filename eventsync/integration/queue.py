"""Pending-integration export queue over the event table.

Rows whose integration marker is NULL have not been exported downstream
yet. Consumers page through them in ``updated_at`` order and mark what
they handled.
"""

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..models import UNSET, Event, format_timestamp, utcnow
from ..sanitize import sanitize_string
from ..store import EventStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 500
MAX_PAGE = 100_000


def clamp_param(value: Any, default: int, minimum: int, maximum: int) -> int:
    """Parse a paging parameter and clamp it to ``[minimum, maximum]``.

    Non-numeric input falls back to ``default``.
    """
    number: int | None = None
    if isinstance(value, bool):
        number = None
    elif isinstance(value, int):
        number = value
    elif isinstance(value, float) and math.isfinite(value):
        number = math.floor(value)
    elif isinstance(value, str):
        try:
            number = int(value.strip())
        except ValueError:
            number = None

    if number is None:
        number = default
    return min(max(number, minimum), maximum)


@dataclass
class PendingPage:
    """One page of the export queue plus pagination metadata."""

    events: list[Event]
    page: int
    page_size: int
    total_items: int
    total_pages: int = field(init=False)
    has_more: bool = field(init=False)

    def __post_init__(self) -> None:
        self.total_pages = (
            math.ceil(self.total_items / self.page_size) if self.total_items else 0
        )
        offset = (self.page - 1) * self.page_size
        self.has_more = offset + len(self.events) < self.total_items

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": [e.to_dict() for e in self.events],
            "pagination": {
                "page": self.page,
                "pageSize": self.page_size,
                "totalItems": self.total_items,
                "totalPages": self.total_pages,
                "hasMore": self.has_more,
            },
        }


class IntegrationQueue:
    """Stable-ordered, paginated view of events not yet exported.

    Args:
        store: Event store holding the rows.
        touch_updated_at: When True, marking also re-stamps ``updated_at``
            with the server time (never moving it backward) so the mark
            itself reaches other participants through the change feed, and
            every matched row counts as affected. When
            False, ``updated_at`` is left alone and only rows whose marker
            actually changes are counted.
        max_page_size: Upper bound applied to requested page sizes.
    """

    def __init__(
        self,
        store: EventStore,
        touch_updated_at: bool = True,
        max_page_size: int = MAX_PAGE_SIZE,
    ):
        self.store = store
        self.touch_updated_at = touch_updated_at
        self.max_page_size = max_page_size

    def list_pending(self, tenant_id: str, limit: int, offset: int = 0) -> list[Event]:
        """Get pending rows, oldest change first.

        Ties on ``updated_at`` are broken by id so pages never overlap.
        """
        rows = self.store.query(
            """
            SELECT * FROM app_events
            WHERE tenant_id = ? AND integration_date IS NULL
            ORDER BY updated_at ASC, id ASC
            LIMIT ? OFFSET ?
            """,
            (tenant_id, limit, offset),
        )
        return [Event.from_row(row) for row in rows]

    def count_pending(self, tenant_id: str) -> int:
        """Number of rows still waiting for export."""
        rows = self.store.query(
            """
            SELECT COUNT(*) FROM app_events
            WHERE tenant_id = ? AND integration_date IS NULL
            """,
            (tenant_id,),
        )
        return rows[0][0]

    def page(
        self,
        tenant_id: str,
        page: Any = None,
        page_size: Any = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
    ) -> PendingPage:
        """Get one page of the queue.

        Args:
            tenant_id: Tenant whose rows are read.
            page: 1-based page number; clamped to ``[1, 100000]``.
            page_size: Rows per page; clamped to ``[1, max_page_size]``.
            default_page_size: Used when ``page_size`` is missing or invalid.

        Returns:
            PendingPage with the rows and pagination metadata.
        """
        page = clamp_param(page, 1, 1, MAX_PAGE)
        page_size = clamp_param(
            page_size,
            min(default_page_size, self.max_page_size),
            1,
            self.max_page_size,
        )
        offset = (page - 1) * page_size

        events = self.list_pending(tenant_id, page_size, offset)
        total = self.count_pending(tenant_id)

        return PendingPage(
            events=events, page=page, page_size=page_size, total_items=total
        )

    def mark_consumed(
        self,
        tenant_id: str,
        ids: Iterable[str],
        integration_date: Any = UNSET,
    ) -> int:
        """Set the integration marker on a set of rows.

        Args:
            tenant_id: Tenant that owns the rows.
            ids: Event ids to mark. Unknown ids are ignored.
            integration_date: Marker to store. ``UNSET`` (argument omitted)
                means now; None clears the marker so the rows are exported
                again.

        Returns:
            Number of rows affected.

        Raises:
            StoreError: If the update failed.
        """
        unique_ids = list(
            dict.fromkeys(i for i in (sanitize_string(v) for v in ids) if i)
        )
        if not unique_ids:
            return 0

        now = utcnow()
        if integration_date is UNSET:
            integration_date = now
        marker = (
            format_timestamp(integration_date)
            if isinstance(integration_date, datetime)
            else None
        )
        placeholders = ",".join("?" * len(unique_ids))

        if self.touch_updated_at:
            sql = f"""
                UPDATE app_events
                SET integration_date = ?, updated_at = MAX(updated_at, ?)
                WHERE tenant_id = ? AND id IN ({placeholders})
            """
            params = (marker, format_timestamp(now), tenant_id, *unique_ids)
        else:
            sql = f"""
                UPDATE app_events
                SET integration_date = ?
                WHERE tenant_id = ? AND id IN ({placeholders})
                  AND integration_date IS NOT ?
            """
            params = (marker, tenant_id, *unique_ids, marker)

        with self.store.transaction() as conn:
            cursor = conn.execute(sql, params)
            count = cursor.rowcount

        logger.info(
            f"Marked {count} of {len(unique_ids)} events for {tenant_id} "
            f"(integration_date={marker})"
        )
        return count
