"""Calendar API client, batch codec, conflict detection, and recurring-event helpers."""

from gcal_tools.calendar.auth import (
    OAuthCredentials,
    RefreshTokenProvider,
    StaticTokenProvider,
    TokenProvider,
)
from gcal_tools.calendar.batch import (
    MAX_BATCH_REQUESTS,
    BatchRequestHandler,
    build_batch_body,
    parse_batch_response,
)
from gcal_tools.calendar.client import GoogleCalendarClient, build_events_path
from gcal_tools.calendar.conflicts import ConflictDetectionService
from gcal_tools.calendar.errors import (
    CalendarAuthError,
    CalendarError,
    CalendarRequestError,
    CalendarTransportError,
    RecurringErrorCode,
    RecurringEventError,
)
from gcal_tools.calendar.models import (
    BatchItemError,
    BatchSubRequest,
    BatchSubResponse,
    ConflictCheckOptions,
    ConflictResult,
    ConflictThresholds,
    DuplicateMatch,
    EventRecord,
    OverlapMatch,
    TimeSpec,
)
from gcal_tools.calendar.recurring import EventPatchArgs, ModificationScope
from gcal_tools.calendar.tools import CalendarToolset
from gcal_tools.calendar.updates import RecurringEventUpdater

__all__ = [
    "MAX_BATCH_REQUESTS",
    "BatchItemError",
    "BatchRequestHandler",
    "BatchSubRequest",
    "BatchSubResponse",
    "CalendarAuthError",
    "CalendarError",
    "CalendarRequestError",
    "CalendarToolset",
    "CalendarTransportError",
    "ConflictCheckOptions",
    "ConflictDetectionService",
    "ConflictResult",
    "ConflictThresholds",
    "DuplicateMatch",
    "EventPatchArgs",
    "EventRecord",
    "GoogleCalendarClient",
    "ModificationScope",
    "OAuthCredentials",
    "OverlapMatch",
    "RecurringErrorCode",
    "RecurringEventError",
    "RecurringEventUpdater",
    "RefreshTokenProvider",
    "StaticTokenProvider",
    "TimeSpec",
    "TokenProvider",
    "build_batch_body",
    "build_events_path",
    "parse_batch_response",
]
