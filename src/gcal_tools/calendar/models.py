"""Pydantic models for events, batch exchanges, and conflict results.

Event models mirror the Google Calendar wire shape (camelCase aliases) so a
fetched payload round-trips through :meth:`EventRecord.to_google` without
losing fields the provider sent but this package does not model.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from gcal_tools.calendar.errors import error_message_from_payload

DUPLICATE_WARNING_THRESHOLD = 0.7
DUPLICATE_BLOCKING_THRESHOLD = 0.95


class EventStatus(StrEnum):
    """Event lifecycle states as reported by the provider."""

    confirmed = "confirmed"
    tentative = "tentative"
    cancelled = "cancelled"


class AttendeeResponseStatus(StrEnum):
    """RSVP response status for an attendee."""

    needs_action = "needsAction"
    accepted = "accepted"
    declined = "declined"
    tentative = "tentative"


class TimeSpec(BaseModel):
    """Event boundary: either an instant (``dateTime``) or a calendar date (``date``).

    ``time_zone`` only matters alongside a ``date_time`` that carries no offset.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    date_time: str | None = Field(default=None, alias="dateTime")
    date: str | None = None
    time_zone: str | None = Field(default=None, alias="timeZone")

    @model_validator(mode="after")
    def _validate_shape(self) -> TimeSpec:
        has_date = bool(self.date)
        has_date_time = bool(self.date_time)
        if has_date == has_date_time:
            raise ValueError("exactly one of dateTime or date must be provided")
        return self

    @property
    def is_all_day(self) -> bool:
        return self.date is not None and self.date_time is None

    @property
    def value(self) -> str:
        """The raw boundary text (``dateTime`` for timed events, ``date`` otherwise)."""
        return self.date_time or self.date or ""


class Attendee(BaseModel):
    """Event attendee as returned by the provider."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    email: str | None = None
    display_name: str | None = Field(default=None, alias="displayName")
    response_status: str | None = Field(default=None, alias="responseStatus")
    optional: bool | None = None
    organizer: bool | None = None
    self_: bool | None = Field(default=None, alias="self")


class EventRecord(BaseModel):
    """Canonical event shape shared by fetch, insert, and conflict checks.

    Unknown provider fields are kept as extras. ``calendar_id`` tags the
    source calendar and is never sent back to the provider.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str | None = None
    title: str | None = Field(default=None, alias="summary")
    description: str | None = None
    location: str | None = None
    start: TimeSpec | None = None
    end: TimeSpec | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    recurrence: list[str] | None = None
    status: str | None = None
    html_link: str | None = Field(default=None, alias="htmlLink")
    calendar_id: str | None = Field(default=None, alias="calendarId")

    @classmethod
    def from_google(cls, payload: dict[str, Any], *, calendar_id: str | None = None) -> EventRecord:
        event = cls.model_validate(payload)
        if calendar_id is not None:
            event.calendar_id = calendar_id
        return event

    def to_google(self) -> dict[str, Any]:
        """Return the provider wire dict, without the local ``calendarId`` tag."""
        payload = self.model_dump(by_alias=True, exclude_none=True, exclude={"calendar_id"})
        if not self.attendees:
            payload.pop("attendees", None)
        return payload

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.cancelled

    @property
    def is_all_day(self) -> bool:
        return self.start is not None and self.start.is_all_day


class BatchSubRequest(BaseModel):
    """One logical API call packed into a batch exchange."""

    model_config = ConfigDict(extra="forbid")

    method: str = "GET"
    path: str
    headers: dict[str, str] | None = None
    body: Any = None


class BatchSubResponse(BaseModel):
    """One parsed part of a batch response, correlated to its request by position.

    ``body`` holds decoded JSON when the part body parsed, else the raw text.
    ``status_code`` is 0 when the part carried no status line.
    """

    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def error_message(self) -> str:
        return error_message_from_payload(self.body) or f"HTTP {self.status_code}"


class BatchItemError(BaseModel):
    """Per-calendar failure recorded while processing a batch response."""

    calendar_id: str
    status_code: int
    message: str


class ConflictThresholds(BaseModel):
    """Similarity thresholds for duplicate warnings and blocking."""

    model_config = ConfigDict(extra="forbid")

    warning: float = Field(default=DUPLICATE_WARNING_THRESHOLD, ge=0.0, le=1.0)
    blocking: float = Field(default=DUPLICATE_BLOCKING_THRESHOLD, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _validate_order(self) -> ConflictThresholds:
        if self.warning > self.blocking:
            raise ValueError("warning threshold must not exceed blocking threshold")
        return self


class ConflictCheckOptions(BaseModel):
    """Options for :meth:`ConflictDetectionService.check_conflicts`.

    ``calendars_to_check`` defaults to the primary calendar of the call.
    ``requester_email`` enables declined-event filtering; without it the
    declined filter is a no-op.
    """

    model_config = ConfigDict(extra="forbid")

    check_duplicates: bool = True
    check_conflicts: bool = True
    calendars_to_check: list[str] | None = None
    duplicate_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    include_declined_events: bool = False
    requester_email: str | None = None


class DuplicateMatch(BaseModel):
    event: EventRecord
    similarity: float
    suggestion: str
    calendar_id: str
    url: str | None = None


class OverlapMatch(BaseModel):
    event: EventRecord
    calendar_id: str
    duration: str
    percentage: int
    start_time: str
    end_time: str
    url: str | None = None


class ConflictResult(BaseModel):
    has_conflicts: bool = False
    duplicates: list[DuplicateMatch] = Field(default_factory=list)
    conflicts: list[OverlapMatch] = Field(default_factory=list)
