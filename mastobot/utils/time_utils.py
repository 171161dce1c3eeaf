from __future__ import annotations

import os
from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

PROMPT_FORMAT = "%Y/%m/%d %H:%M:%S"


def now_local() -> datetime:
    """Return the current time as an aware datetime in the system's local timezone."""
    return datetime.now().astimezone()


def resolve_tz(tz_name: str | None = None) -> tzinfo:
    """IANA zone for ``tz_name`` (``$TZ`` when unset); "UTC" is exact, unknown names mean local time."""
    name = tz_name or os.getenv("TZ")
    if name == "UTC":
        return timezone.utc
    if name and name != "system":
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return now_local().tzinfo


def now_in(tz_name: str | None = None) -> datetime:
    """Return the current time in ``tz_name``, falling back to ``$TZ`` then local time."""
    return datetime.now(resolve_tz(tz_name))


def format_prompt_datetime(dt: datetime) -> str:
    """Second-resolution, 24h timestamp embedded into the synthesized system turn."""
    return dt.strftime(PROMPT_FORMAT)


def parse_iso(ts: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp as emitted by Mastodon (``Z`` suffix accepted)."""
    if not ts:
        return None
    try:
        value = str(ts).strip()
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=now_local().tzinfo)
    return dt
