"""Timezone-naive to absolute-instant conversion and event time-spec helpers.

Naive wall-clock strings are resolved against an IANA zone by probing: a
trial instant is formed as if the wall clock were UTC, rendered in the target
zone, and shifted by the wall-clock difference. The step runs twice so a
trial landing across a daylight-saving transition still converges. No static
offset table is needed.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from gcal_tools.calendar.models import TimeSpec

logger = logging.getLogger(__name__)

_EXPLICIT_ZONE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(Z|[+-]\d{2}:\d{2})$")
_NAIVE_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.\d+)?$")
_DATETIME_PREFIX_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T")
_DATE_ONLY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_BASIC_UTC_FORMAT = "%Y%m%dT%H%M%SZ"


def has_explicit_zone(value: str) -> bool:
    """Return True when *value* is ``YYYY-MM-DDTHH:MM:SS`` plus ``Z`` or ``±HH:MM``."""
    return _EXPLICIT_ZONE_PATTERN.match(value) is not None


def is_date_only(value: str) -> bool:
    return _DATE_ONLY_PATTERN.match(value) is not None


def to_absolute_instant(value: str, fallback_timezone: str) -> str:
    """Convert a datetime string to an RFC 3339 instant.

    Zone-qualified input is returned unchanged. Naive input is interpreted as
    wall-clock time in *fallback_timezone* and returned in UTC (``...Z``).
    Input that cannot be parsed, or an unknown zone, falls back to treating
    the string as UTC by appending ``Z``.
    """
    if carries_zone(value):
        return value

    match = _NAIVE_PATTERN.match(value)
    if match is None:
        logger.debug("Unparseable datetime %r; treating as UTC", value)
        return f"{value}Z"

    try:
        year, month, day, hour, minute, second = (int(part) for part in match.groups())
        wanted = datetime(year, month, day, hour, minute, second)
        zone = ZoneInfo(fallback_timezone)
    except (ValueError, ZoneInfoNotFoundError):
        logger.debug(
            "Cannot resolve %r in timezone %r; treating as UTC", value, fallback_timezone
        )
        return f"{value}Z"

    return format_rfc3339_utc(_local_wall_clock_to_utc(wanted, zone))


def _local_wall_clock_to_utc(wanted: datetime, zone: ZoneInfo) -> datetime:
    instant = wanted.replace(tzinfo=UTC)
    for _ in range(2):
        rendered = instant.astimezone(zone).replace(tzinfo=None)
        instant = instant + (wanted - rendered)
    return instant


def build_time_spec(value: str, fallback_timezone: str) -> TimeSpec:
    """Build an event boundary from user input.

    - no time component: all-day ``{date}``
    - zone-qualified: ``{dateTime}`` only
    - naive: ``{dateTime, timeZone}``
    """
    if "T" not in value:
        return TimeSpec(date=value)
    if carries_zone(value):
        return TimeSpec(date_time=value)
    return TimeSpec(date_time=value, time_zone=fallback_timezone)


def parse_instant(value: str, *, timezone: str | None = None) -> datetime:
    """Parse a boundary string to an aware datetime.

    Date-only values become midnight in *timezone* (UTC when omitted), naive
    datetimes are resolved via :func:`to_absolute_instant`, and explicit
    offsets are honoured as-is.

    Raises ``ValueError`` when *value* is not an ISO 8601 date or datetime.
    """
    normalized = value.strip()
    if is_date_only(normalized):
        normalized = f"{normalized}T00:00:00"
    if "T" in normalized and not has_explicit_zone(normalized):
        if _NAIVE_PATTERN.match(normalized) is not None:
            normalized = to_absolute_instant(normalized, timezone or "UTC")
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def time_spec_to_datetime(spec: TimeSpec) -> datetime:
    return parse_instant(spec.value, timezone=spec.time_zone)


def format_rfc3339_utc(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def format_basic_utc(value: datetime) -> str:
    """Render *value* as ``YYYYMMDDTHHMMSSZ`` in UTC, dropping sub-second precision."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).strftime(_BASIC_UTC_FORMAT)


def inclusive_end_date(exclusive_end: str) -> date:
    """All-day end dates are exclusive; return the last day actually covered."""
    return date.fromisoformat(exclusive_end) - timedelta(days=1)


def carries_zone(value: str) -> bool:
    """Return True when a ``YYYY-MM-DDT...`` value has ``Z`` or an offset after its date part."""
    if _DATETIME_PREFIX_PATTERN.match(value) is None:
        return False
    time_part = value[10:]
    return "Z" in time_part or "+" in time_part or "-" in time_part


def resolve_window_bound(value: str, timezone: str | None) -> str:
    """Turn a candidate boundary into a ``timeMin``/``timeMax`` instant.

    Values carrying ``Z`` or an offset, fractional seconds included, pass
    through unchanged. Naive values and dates are resolved in *timezone*
    (UTC when omitted). The window is never widened.
    """
    if is_date_only(value):
        value = f"{value}T00:00:00"
    if carries_zone(value):
        return value
    return to_absolute_instant(value, timezone or "UTC")
