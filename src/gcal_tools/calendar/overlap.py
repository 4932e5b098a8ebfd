"""Time-interval overlap analysis between events.

Intervals are half-open (``start <= t < end``). Overlap percentage is always
relative to the *first* event: it answers "how much of this event is
consumed", so ``overlap_percentage(a, b)`` and ``overlap_percentage(b, a)``
differ when the events have different lengths.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from gcal_tools.calendar.datetime_utils import format_rfc3339_utc, time_spec_to_datetime
from gcal_tools.calendar.models import EventRecord, TimeSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime
    is_all_day: bool = False

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class OverlapAnalysis:
    duration: timedelta
    percentage: int
    start: datetime
    end: datetime

    @property
    def duration_text(self) -> str:
        return format_duration(self.duration)


def event_time_range(event: EventRecord) -> TimeRange | None:
    """Resolve an event's boundaries to absolute instants, or None when unusable."""
    if event.start is None or event.end is None:
        return None
    try:
        start = time_spec_to_datetime(event.start)
        end = time_spec_to_datetime(event.end)
    except ValueError:
        logger.debug("Event %s has unparseable boundaries; ignoring", event.id)
        return None
    return TimeRange(start=start, end=end, is_all_day=event.start.is_all_day)


def ranges_overlap(first: TimeRange, second: TimeRange) -> bool:
    return first.start < second.end and second.start < first.end


def range_overlap_duration(first: TimeRange, second: TimeRange) -> timedelta:
    overlap = min(first.end, second.end) - max(first.start, second.start)
    return max(timedelta(0), overlap)


def events_overlap(first: EventRecord, second: EventRecord) -> bool:
    first_range = event_time_range(first)
    second_range = event_time_range(second)
    if first_range is None or second_range is None:
        return False
    return ranges_overlap(first_range, second_range)


def overlap_duration(first: EventRecord, second: EventRecord) -> timedelta:
    first_range = event_time_range(first)
    second_range = event_time_range(second)
    if first_range is None or second_range is None:
        return timedelta(0)
    return range_overlap_duration(first_range, second_range)


def overlap_percentage(first: EventRecord, second: EventRecord) -> int:
    """Percentage of *first* covered by *second*, rounded half up."""
    first_range = event_time_range(first)
    second_range = event_time_range(second)
    if first_range is None or second_range is None:
        return 0
    return _percentage_of(first_range, range_overlap_duration(first_range, second_range))


def _percentage_of(reference: TimeRange, overlap: timedelta) -> int:
    total_seconds = reference.duration.total_seconds()
    if total_seconds <= 0:
        return 0
    return math.floor(overlap.total_seconds() / total_seconds * 100 + 0.5)


def analyze_overlap(first: EventRecord, second: EventRecord) -> OverlapAnalysis | None:
    """Describe how *second* overlaps *first*; None when they do not overlap."""
    first_range = event_time_range(first)
    second_range = event_time_range(second)
    if first_range is None or second_range is None:
        return None
    if not ranges_overlap(first_range, second_range):
        return None

    duration = range_overlap_duration(first_range, second_range)
    return OverlapAnalysis(
        duration=duration,
        percentage=_percentage_of(first_range, duration),
        start=max(first_range.start, second_range.start),
        end=min(first_range.end, second_range.end),
    )


def find_overlapping_events(
    events: Iterable[EventRecord],
    target: EventRecord,
) -> list[EventRecord]:
    """Return events overlapping *target*, skipping *target* itself and cancelled events."""
    overlapping: list[EventRecord] = []
    for event in events:
        if target.id is not None and event.id == target.id:
            continue
        if event.is_cancelled:
            continue
        if events_overlap(target, event):
            overlapping.append(event)
    return overlapping


def check_busy_conflict(event: EventRecord, busy_start: str | None, busy_end: str | None) -> bool:
    """Return True when a free/busy window overlaps *event*."""
    if not busy_start or not busy_end:
        return False
    busy = EventRecord(start=TimeSpec(date_time=busy_start), end=TimeSpec(date_time=busy_end))
    return events_overlap(event, busy)


def format_duration(duration: timedelta) -> str:
    """Render a duration largest unit first, e.g. ``"1 day 2 hours"`` or ``"30 minutes"``."""
    minutes = int(duration.total_seconds() // 60)
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        remaining_hours = hours % 24
        if remaining_hours:
            return f"{_plural(days, 'day')} {_plural(remaining_hours, 'hour')}"
        return _plural(days, "day")

    if hours > 0:
        remaining_minutes = minutes % 60
        if remaining_minutes:
            return f"{_plural(hours, 'hour')} {_plural(remaining_minutes, 'minute')}"
        return _plural(hours, "hour")

    return _plural(minutes, "minute")


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def format_window(analysis: OverlapAnalysis) -> tuple[str, str]:
    return format_rfc3339_utc(analysis.start), format_rfc3339_utc(analysis.end)
