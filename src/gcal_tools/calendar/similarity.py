"""Rules-based duplicate likelihood between two events.

The score is an ordered decision table (first matching rule wins), not a
weighted model:

====  ===========================================  =====
Rule  Condition                                    Score
====  ===========================================  =====
1     all-day vs timed                             0.2
2     exact title and time overlap                 0.95
3     similar title and time overlap               0.7
4     exact title, same calendar day               0.6
5     exact title, different day                   0.4
6     similar title only                           0.3
7     otherwise                                    0.1
====  ===========================================  =====
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from gcal_tools.calendar.models import DUPLICATE_WARNING_THRESHOLD, EventRecord
from gcal_tools.calendar.overlap import event_time_range, events_overlap

SCORE_KIND_MISMATCH = 0.2
SCORE_EXACT_TITLE_OVERLAP = 0.95
SCORE_SIMILAR_TITLE_OVERLAP = 0.7
SCORE_EXACT_TITLE_SAME_DAY = 0.6
SCORE_EXACT_TITLE_OTHER_DAY = 0.4
SCORE_SIMILAR_TITLE = 0.3
SCORE_UNRELATED = 0.1

# Words of this length or shorter are ignored when comparing titles.
_SIGNIFICANT_WORD_MIN_LENGTH = 4


@dataclass(frozen=True)
class TitleMatch:
    exact: bool
    similar: bool


def titles_match(first: str | None, second: str | None) -> TitleMatch:
    """Compare titles case- and surrounding-whitespace-insensitively."""
    if not first or not second:
        return TitleMatch(exact=False, similar=False)

    t1 = first.lower().strip()
    t2 = second.lower().strip()
    if t1 == t2:
        return TitleMatch(exact=True, similar=True)

    if t1 in t2 or t2 in t1:
        return TitleMatch(exact=False, similar=True)

    words1 = [word for word in t1.split() if len(word) >= _SIGNIFICANT_WORD_MIN_LENGTH]
    words2 = [word for word in t2.split() if len(word) >= _SIGNIFICANT_WORD_MIN_LENGTH]
    if words1 and words2:
        common = [word for word in words1 if word in words2]
        ratio = len(common) / min(len(words1), len(words2))
        return TitleMatch(exact=False, similar=ratio >= 0.5)

    return TitleMatch(exact=False, similar=False)


def events_on_same_day(first: EventRecord, second: EventRecord) -> bool:
    """Compare start dates in *first*'s zone, or UTC when it has none."""
    zone = _day_zone(first)
    first_day = _start_day(first, zone)
    second_day = _start_day(second, zone)
    if first_day is None or second_day is None:
        return False
    return first_day == second_day


def _day_zone(event: EventRecord) -> tzinfo:
    if event.start is not None and event.start.time_zone:
        try:
            return ZoneInfo(event.start.time_zone)
        except (ValueError, ZoneInfoNotFoundError):
            return UTC
    return UTC


def _start_day(event: EventRecord, zone: tzinfo) -> date | None:
    if event.start is not None and event.start.date is not None:
        try:
            return date.fromisoformat(event.start.date)
        except ValueError:
            return None
    time_range = event_time_range(event)
    if time_range is None:
        return None
    return time_range.start.astimezone(zone).date()


def similarity_score(first: EventRecord, second: EventRecord) -> float:
    """Score how likely *second* is a re-creation of *first*."""
    if first.is_all_day != second.is_all_day:
        return SCORE_KIND_MISMATCH

    title = titles_match(first.title, second.title)
    overlap = events_overlap(first, second)

    if title.exact and overlap:
        return SCORE_EXACT_TITLE_OVERLAP
    if title.similar and overlap:
        return SCORE_SIMILAR_TITLE_OVERLAP
    if title.exact:
        if events_on_same_day(first, second):
            return SCORE_EXACT_TITLE_SAME_DAY
        return SCORE_EXACT_TITLE_OTHER_DAY
    if title.similar:
        return SCORE_SIMILAR_TITLE
    return SCORE_UNRELATED


def is_duplicate(
    first: EventRecord,
    second: EventRecord,
    threshold: float = DUPLICATE_WARNING_THRESHOLD,
) -> bool:
    return similarity_score(first, second) >= threshold
