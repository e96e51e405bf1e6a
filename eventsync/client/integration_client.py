"""Consumer for the pending-integration export queue."""

import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ..models import UNSET, format_timestamp, utcnow
from ..sanitize import parse_timestamp, sanitize_string
from .http import RemoteClient

logger = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 200
INACTIVE_STATUSES = ("removido", "cancelado")

IntegrationProcessor = Callable[[dict[str, Any]], bool | Awaitable[bool]]


def is_active_status(status: str | None) -> bool:
    if not status:
        return True
    return status.strip().lower() not in INACTIVE_STATUSES


def should_integrate_event(event: dict[str, Any]) -> bool:
    """Default export filter: titled, active and scheduled events only."""
    if not sanitize_string(event.get("id")):
        return False
    if not sanitize_string(event.get("title")):
        return False
    if not is_active_status(event.get("status")):
        return False
    return bool(event.get("date") or event.get("start"))


@dataclass
class IntegrationResult:
    """Result of draining the export queue."""

    processed: int = 0
    marked: int = 0
    pages: int = 0
    error: str | None = None


class IntegrationClient(RemoteClient):
    """Pages through pending events, hands them to a processor and marks them.

    Marking only happens after a page is processed, so a crash in between
    leaves the events pending and they are offered again on the next run.
    """

    def __init__(
        self,
        remote_url: str | None = None,
        tenant_id: str = "default",
        max_retries: int = 3,
        timeout: float = 30.0,
    ):
        super().__init__(remote_url, tenant_id, max_retries, timeout)
        self.integration_log: deque[dict[str, Any]] = deque(maxlen=MAX_LOG_ENTRIES)

    async def fetch_pending(
        self, page: int = 1, page_size: int = 100
    ) -> tuple[dict[str, Any] | None, str | None]:
        """Fetch one page of the queue.

        Returns:
            Tuple of ({"events", "pagination"}, error_message).
        """
        return await self._request_with_retry(
            "GET",
            "/integration/events",
            params={"page": page, "pageSize": page_size},
        )

    async def mark(
        self, ids: list[str], integration_date: Any = UNSET
    ) -> tuple[dict[str, Any] | None, str | None]:
        """Mark events as exported.

        Args:
            ids: Event ids to mark.
            integration_date: ``UNSET`` lets the server use its clock, None
                clears the marker, a datetime or ISO string sets it. An
                unparseable string is treated like ``UNSET``.

        Returns:
            Tuple of ({"updated", "integrationDate"}, error_message).
        """
        if not ids:
            return {"updated": 0, "integrationDate": None}, None

        body: dict[str, Any] = {"ids": ids}
        if integration_date is None:
            body["integrationDate"] = None
        elif integration_date is not UNSET:
            parsed = parse_timestamp(integration_date)
            if parsed is not None:
                body["integrationDate"] = format_timestamp(parsed)

        return await self._request_with_retry(
            "POST", "/integration/events/mark", body
        )

    async def _default_processor(self, event: dict[str, Any]) -> bool:
        if not should_integrate_event(event):
            return False
        self.integration_log.appendleft(
            {
                "id": event["id"],
                "title": event.get("title"),
                "integratedAt": format_timestamp(utcnow()),
                "date": event.get("date"),
                "start": event.get("start"),
                "provider": event.get("provider"),
            }
        )
        return True

    async def integrate_pending(
        self,
        processor: IntegrationProcessor | None = None,
        page_size: int = 100,
        max_pages: int = 50,
    ) -> IntegrationResult:
        """Drain the export queue.

        Handled events are marked after each page; rejected ones stay
        pending and are not offered to the processor again in this run.

        Args:
            processor: Callable returning True when an event was exported.
                May be sync or async. Defaults to an in-memory log.
            page_size: Events per page.
            max_pages: Safety bound on pages fetched in one run.

        Returns:
            IntegrationResult with counts and the first error, if any.
        """
        processor = processor or self._default_processor
        result = IntegrationResult()
        skipped: set[str] = set()

        while result.pages < max_pages:
            # Marked rows leave the queue and skipped rows keep their place,
            # so this page starts at or before the first unseen row.
            page = len(skipped) // page_size + 1
            data, error = await self.fetch_pending(page, page_size)
            if error:
                result.error = error
                break
            result.pages += 1

            fresh = [
                e for e in data.get("events") or [] if e.get("id") not in skipped
            ]
            if not fresh:
                break

            to_mark = []
            for event in fresh:
                try:
                    handled = processor(event)
                    if inspect.isawaitable(handled):
                        handled = await handled
                except Exception as e:
                    logger.warning(f"Failed to integrate event {event.get('id')}: {e}")
                    handled = False
                result.processed += 1
                if handled:
                    to_mark.append(event["id"])
                else:
                    skipped.add(event["id"])

            if to_mark:
                marked, error = await self.mark(to_mark)
                if error:
                    result.error = error
                    break
                result.marked += marked.get("updated", 0)

            pagination = data.get("pagination") or {}
            if not pagination.get("hasMore"):
                break

        logger.info(
            f"Integration run: processed={result.processed}, "
            f"marked={result.marked}, pages={result.pages}"
        )
        return result
