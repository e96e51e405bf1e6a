"""Sanitation of event payloads received from clients.

Clients may hold lossy or partial state, so nothing here raises: blank
strings collapse to None, bad durations fall back to the default and
unparseable timestamps are treated as absent.
"""

import math
from datetime import datetime, timezone
from typing import Any

from .models import (
    DEFAULT_DIFFICULTY,
    DEFAULT_DURATION,
    DEFAULT_TITLE,
    DEFAULT_TYPE,
    MAX_DURATION,
    UNSET,
    Event,
    format_timestamp,
    utcnow,
)


def sanitize_string(value: Any) -> str | None:
    """Trim a string; non-strings and blank strings become None."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def ensure_duration(value: Any, fallback: int = DEFAULT_DURATION) -> int:
    """Coerce a duration in minutes to an integer in ``[1, MAX_DURATION]``."""
    number: float | None = None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip()) if value.strip() else None
        except ValueError:
            number = None

    if number is None or not math.isfinite(number):
        number = float(fallback)
    return min(max(1, _round_half_up(number)), MAX_DURATION)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 instant into an aware UTC datetime.

    Naive values are taken as UTC. The result is truncated to milliseconds,
    the precision timestamps are stored and exchanged with.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        parsed = parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError):
        return None
    return parsed.replace(microsecond=(parsed.microsecond // 1000) * 1000)


def sanitize_schedule_value(value: Any) -> str | None:
    """Normalize a date/start/end value.

    Values that parse as an instant are stored in the fixed-width UTC form;
    anything else is kept as a trimmed string.
    """
    parsed = parse_timestamp(value) if isinstance(value, str) else None
    if parsed is not None:
        return format_timestamp(parsed)
    return sanitize_string(value)


def _resolve_integration_date(raw: dict[str, Any]) -> Any:
    """Resolve the three-state integration marker of an incoming payload.

    Returns ``UNSET`` when the caller did not mean to touch the marker,
    otherwise ``None`` or a datetime.
    """
    has_key = "integrationDate" in raw
    raw_value = raw.get("integrationDate")
    parsed = parse_timestamp(raw_value)

    override = raw.get("integrationDateProvided")
    if isinstance(override, bool):
        provided = override
    elif parsed is not None:
        provided = True
    elif not has_key:
        provided = False
    else:
        provided = raw_value is None

    return parsed if provided else UNSET


def sanitize_incoming_event(
    raw: Any, now: datetime | None = None
) -> Event | None:
    """Build an Event from an untrusted client payload.

    Args:
        raw: Decoded JSON object for one event.
        now: Server time used when ``updatedAt`` is missing or invalid.

    Returns:
        The sanitized Event, or None when the payload has no usable id.
    """
    if not isinstance(raw, dict):
        return None

    event_id = sanitize_string(raw.get("id"))
    if not event_id:
        return None

    updated_at = parse_timestamp(raw.get("updatedAt")) or now or utcnow()
    created_at = parse_timestamp(raw.get("createdAt")) or updated_at

    return Event(
        id=event_id,
        title=sanitize_string(raw.get("title")) or DEFAULT_TITLE,
        type=sanitize_string(raw.get("type")) or DEFAULT_TYPE,
        difficulty=sanitize_string(raw.get("difficulty")) or DEFAULT_DIFFICULTY,
        duration=ensure_duration(raw.get("duration")),
        notes=sanitize_string(raw.get("notes")),
        date=sanitize_schedule_value(raw.get("date")),
        start=sanitize_schedule_value(raw.get("start")),
        end=sanitize_schedule_value(raw.get("end")),
        color=sanitize_string(raw.get("color")),
        status=sanitize_string(raw.get("status")),
        provider=sanitize_string(raw.get("provider")),
        account_id=sanitize_string(raw.get("accountId")),
        google_id=sanitize_string(raw.get("googleId")),
        outlook_id=sanitize_string(raw.get("outlookId")),
        ics_uid=sanitize_string(raw.get("icsUid")),
        created_at=created_at,
        updated_at=updated_at,
        integration_date=_resolve_integration_date(raw),
    )
