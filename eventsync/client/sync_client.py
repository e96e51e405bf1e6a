"""Device-side sync client.

Keeps a local event replica consistent with an eventsync server: pushes
local changes in batches, merges the pull delta back with the same
last-write-wins rule the server uses, and advances the cursor to the
server's clock.
"""

import asyncio
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from ..models import Event, format_timestamp
from ..sanitize import parse_timestamp, sanitize_incoming_event
from ..store import EventStore
from ..sync import ChangeFeed, MergeEngine
from .http import RemoteClient

logger = logging.getLogger(__name__)

MAX_SYNC_CACHE_ENTRIES = 1000


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    entries_pushed: int = 0
    entries_pulled: int = 0
    error: str | None = None
    timestamp: datetime | None = None


def _to_payload(event: Event) -> dict[str, Any]:
    """Serialize a local row for pushing.

    A NULL local marker is sent as absent so it never clears the server's
    marker; only a set marker is pushed as an explicit value.
    """
    payload = event.to_dict()
    if event.integration_date is None:
        payload.pop("integrationDate")
    return payload


class SyncClient(RemoteClient):
    """Client that synchronizes a local EventStore with a server.

    Supports:
    - Push: local rows newer than the last pushed version, in batches
    - Pull: the server delta returned by the same exchange
    - Loop: periodic sync with backoff on consecutive failures
    """

    def __init__(
        self,
        local_store: EventStore,
        remote_url: str | None = None,
        tenant_id: str = "default",
        batch_size: int = 50,
        max_retries: int = 3,
        timeout: float = 30.0,
        state_path: str | Path | None = None,
    ):
        """Initialize the sync client.

        Args:
            local_store: Local replica to sync.
            remote_url: Base URL of the server (e.g., "http://sync:4000").
            tenant_id: Tenant the replica belongs to.
            batch_size: Maximum events per push request.
            max_retries: Maximum retry attempts.
            timeout: Request timeout in seconds.
            state_path: Optional JSON file persisting the cursor between runs.
        """
        super().__init__(remote_url, tenant_id, max_retries, timeout)
        self.store = local_store
        self.batch_size = max(1, batch_size)
        self.state_path = Path(state_path).expanduser() if state_path else None
        self._merge = MergeEngine(local_store)
        self._feed = ChangeFeed(local_store)
        self._last_sync_at: datetime | None = None
        self._pushed_through: datetime | None = None
        self._last_sync: datetime | None = None
        self._synced_versions: OrderedDict[str, str] = OrderedDict()
        self._state_loaded = False

    # ==================== State ====================

    def load_state(self) -> None:
        """Load the cursor, push watermark and acknowledged versions."""
        if self._state_loaded:
            return
        self._state_loaded = True

        if not self.state_path or not self.state_path.exists():
            return

        try:
            data = json.loads(self.state_path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load sync state: {e}")
            return

        self._last_sync_at = parse_timestamp(data.get("lastSyncAt"))
        self._pushed_through = parse_timestamp(data.get("pushedThrough"))
        for event_id, updated_at in (data.get("syncedEvents") or {}).items():
            parsed = parse_timestamp(updated_at)
            if isinstance(event_id, str) and parsed:
                self._remember(event_id, format_timestamp(parsed))

    def save_state(self) -> None:
        """Persist the cursor, push watermark and acknowledged versions."""
        if not self.state_path:
            return

        data = {
            "lastSyncAt": (
                format_timestamp(self._last_sync_at) if self._last_sync_at else None
            ),
            "pushedThrough": (
                format_timestamp(self._pushed_through)
                if self._pushed_through
                else None
            ),
            "syncedEvents": dict(self._synced_versions),
        }
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self.state_path.write_text(json.dumps(data))
        except OSError as e:
            logger.warning(f"Failed to persist sync state: {e}")

    def _remember(self, event_id: str, updated_at: str) -> None:
        self._synced_versions[event_id] = updated_at
        self._synced_versions.move_to_end(event_id)
        while len(self._synced_versions) > MAX_SYNC_CACHE_ENTRIES:
            self._synced_versions.popitem(last=False)

    # ==================== Sync ====================

    def pending_changes(self) -> list[dict[str, Any]]:
        """Local rows not yet acknowledged by the server.

        Rows are selected against the newest local ``updated_at`` already
        pushed, never against the server cursor: local rows carry the
        device clock, which need not agree with the server's.
        """
        self.load_state()
        since = None
        if self._pushed_through is not None:
            # Inclusive, so a row stamped in the same millisecond as the
            # last pushed one is still offered.
            since = self._pushed_through - timedelta(milliseconds=1)
        local = self._feed.changes_since(self.tenant_id, since)
        return [
            _to_payload(event)
            for event in local
            if self._synced_versions.get(event.id) != format_timestamp(event.updated_at)
        ]

    def _chunks(self, payload: list[dict[str, Any]]) -> list[list[dict[str, Any]]]:
        if not payload:
            return [[]]
        return [
            payload[i : i + self.batch_size]
            for i in range(0, len(payload), self.batch_size)
        ]

    async def sync(self) -> SyncResult:
        """Push local changes and merge the server delta.

        The cursor only advances when every batch succeeded, so a failed run
        is simply repeated next time.

        Returns:
            SyncResult with push and pull statistics.
        """
        if not self.remote_url:
            return SyncResult(status=SyncStatus.FAILED, error="No remote URL configured")

        payload = self.pending_changes()
        since = format_timestamp(self._last_sync_at) if self._last_sync_at else None

        remote: dict[str, Event] = {}
        server_time: datetime | None = None
        pushed = 0

        for chunk in self._chunks(payload):
            data, error = await self._request_with_retry(
                "POST", "/sync/events", {"since": since, "events": chunk}
            )
            if error:
                return SyncResult(
                    status=(
                        SyncStatus.OFFLINE
                        if error.startswith("Connection")
                        else SyncStatus.FAILED
                    ),
                    entries_pushed=pushed,
                    error=error,
                )

            for raw in data.get("events") or []:
                event = sanitize_incoming_event(raw)
                if event is None:
                    continue
                existing = remote.get(event.id)
                if existing is None or event.updated_at > existing.updated_at:
                    remote[event.id] = event

            server_time = parse_timestamp(data.get("serverTime")) or server_time

            for item in chunk:
                self._remember(item["id"], item["updatedAt"])
                pushed_at = parse_timestamp(item["updatedAt"])
                if self._pushed_through is None or pushed_at > self._pushed_through:
                    self._pushed_through = pushed_at
            pushed += len(chunk)

        pulled = list(remote.values())
        self._merge.apply(self.tenant_id, pulled)
        for event in pulled:
            self._remember(event.id, format_timestamp(event.updated_at))

        if server_time is not None:
            self._last_sync_at = server_time
        self._last_sync = datetime.now()
        self.save_state()

        return SyncResult(
            status=SyncStatus.SUCCESS,
            entries_pushed=pushed,
            entries_pulled=len(pulled),
            timestamp=self._last_sync,
        )

    async def sync_loop(
        self,
        interval_seconds: int = 300,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run continuous sync loop.

        Args:
            interval_seconds: Seconds between sync attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.sync()
                logger.info(
                    f"Sync: {result.status.value}, "
                    f"pushed={result.entries_pushed}, "
                    f"pulled={result.entries_pulled}"
                )
            except Exception as e:
                logger.error(f"Sync loop error: {e}")

            # Adaptive interval: back off if consecutive failures
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    3600,  # Max 1 hour
                )
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break  # Stop event was set
                except asyncio.TimeoutError:
                    pass  # Normal timeout, continue loop
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful sync."""
        return self._last_sync

    @property
    def cursor(self) -> datetime | None:
        """Server time to send as ``since`` on the next exchange."""
        return self._last_sync_at

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync statistics.
        """
        return {
            "remote_url": self.remote_url,
            "tenant_id": self.tenant_id,
            "cursor": (
                format_timestamp(self._last_sync_at) if self._last_sync_at else None
            ),
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "pending_entries": len(self.pending_changes()),
            "total_entries": self.store.count(self.tenant_id),
        }
