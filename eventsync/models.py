"""Event record shared by the store, the merge engine and the wire format."""

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

DEFAULT_TITLE = "Evento"
DEFAULT_TYPE = "Tarefa"
DEFAULT_DIFFICULTY = "Media"
DEFAULT_DURATION = 15
# Upper bound for stored durations; fits a signed 32-bit integer.
MAX_DURATION = 2**31 - 1


class _Unset:
    """Marker for a field the caller did not send at all."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def format_timestamp(value: datetime) -> str:
    """Format as fixed-width UTC ISO-8601 with milliseconds.

    Stored timestamps are compared as text, so every value must have the
    same width: ``YYYY-MM-DDTHH:MM:SS.mmmZ``.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
        f".{value.microsecond // 1000:03d}Z"
    )


def utcnow() -> datetime:
    """Current UTC time truncated to the stored precision."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def _from_stored(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class Event:
    """A single synchronized event row.

    ``integration_date`` is three-state on input: ``UNSET`` leaves the stored
    marker alone, ``None`` clears it and a datetime sets it. Rows read back
    from the store always carry ``None`` or a datetime.
    """

    id: str
    updated_at: datetime
    title: str = DEFAULT_TITLE
    type: str = DEFAULT_TYPE
    difficulty: str = DEFAULT_DIFFICULTY
    duration: int = DEFAULT_DURATION
    notes: str | None = None
    date: str | None = None
    start: str | None = None
    end: str | None = None
    color: str | None = None
    status: str | None = None
    provider: str | None = None
    account_id: str | None = None
    google_id: str | None = None
    outlook_id: str | None = None
    ics_uid: str | None = None
    created_at: datetime | None = None
    integration_date: Any = UNSET

    def __post_init__(self) -> None:
        if self.created_at is None:
            self.created_at = self.updated_at

    @property
    def integration_date_provided(self) -> bool:
        return self.integration_date is not UNSET

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire representation."""
        integration_date = self.integration_date
        return {
            "id": self.id,
            "title": self.title,
            "notes": self.notes,
            "date": self.date,
            "type": self.type,
            "difficulty": self.difficulty,
            "duration": self.duration,
            "start": self.start,
            "end": self.end,
            "color": self.color,
            "status": self.status,
            "provider": self.provider,
            "accountId": self.account_id,
            "googleId": self.google_id,
            "outlookId": self.outlook_id,
            "icsUid": self.ics_uid,
            "updatedAt": format_timestamp(self.updated_at),
            "createdAt": (
                format_timestamp(self.created_at) if self.created_at else None
            ),
            "integrationDate": (
                format_timestamp(integration_date)
                if isinstance(integration_date, datetime)
                else None
            ),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Event":
        """Create from an ``app_events`` row."""
        return cls(
            id=row["id"],
            title=row["title"],
            notes=row["notes"],
            date=row["event_date"],
            type=row["event_type"],
            difficulty=row["difficulty"],
            duration=max(1, row["duration_minutes"] or DEFAULT_DURATION),
            start=row["start_at"],
            end=row["end_at"],
            color=row["color"],
            status=row["status"],
            provider=row["provider"],
            account_id=row["account_id"],
            google_id=row["google_id"],
            outlook_id=row["outlook_id"],
            ics_uid=row["ics_uid"],
            created_at=_from_stored(row["created_at"]),
            updated_at=_from_stored(row["updated_at"]),
            integration_date=_from_stored(row["integration_date"]),
        )
