"""Error hierarchy for calendar API, batch, and recurrence helpers.

Transport and auth failures are raised. Per-item batch failures are returned
as :class:`~gcal_tools.calendar.models.BatchItemError` records instead.
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any

import httpx


class CalendarError(RuntimeError):
    """Base error raised by calendar request helpers."""


class CalendarAuthError(CalendarError):
    """Raised when an access token cannot be acquired."""


class CalendarTransportError(CalendarError):
    """Raised when an HTTP exchange never completed after bounded retries."""


class CalendarRequestError(CalendarError):
    """Raised when a Google Calendar API request returns a non-2xx status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class RecurringErrorCode(StrEnum):
    """Machine-readable codes carried by :class:`RecurringEventError`."""

    INVALID_SCOPE = "INVALID_MODIFICATION_SCOPE"
    MISSING_ORIGINAL_TIME = "MISSING_ORIGINAL_START_TIME"
    MISSING_FUTURE_DATE = "MISSING_FUTURE_START_DATE"
    PAST_FUTURE_DATE = "FUTURE_DATE_IN_PAST"
    NON_RECURRING_SCOPE = "SCOPE_NOT_APPLICABLE_TO_SINGLE_EVENT"
    INVALID_RECURRENCE = "INVALID_RECURRENCE"


class RecurringEventError(ValueError):
    """Raised synchronously for malformed recurrence input or invalid edit scopes."""

    def __init__(self, message: str, code: RecurringErrorCode) -> None:
        self.code = code
        super().__init__(message)


def safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    message = error_message_from_payload(payload)
    if message is not None:
        return message

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def error_message_from_payload(payload: Any) -> str | None:
    """Extract ``error.message`` (or ``error`` / ``message``) from a Google error body."""
    if not isinstance(payload, dict):
        return None

    error_payload = payload.get("error")
    if isinstance(error_payload, dict):
        message = error_payload.get("message")
        if isinstance(message, str) and message.strip():
            return " ".join(message.split())[:200]
    if isinstance(error_payload, str) and error_payload.strip():
        return " ".join(error_payload.split())[:200]

    message = payload.get("message")
    if isinstance(message, str) and message.strip():
        return " ".join(message.split())[:200]
    return None


def redact_credential_values(message: str) -> str:
    """Redact token and secret values from an error message.

    Matches ``key=value``, ``"key": "value"`` and ``key: value`` shapes as well
    as bearer authorization values.
    """
    redacted = message
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._\-~+/]+=*", "Bearer [REDACTED]", redacted)
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*:\s*([^\s,;\"']+)",
        r"\1: [REDACTED]",
        redacted,
    )
    return redacted


def build_structured_error(exc: Exception, *, calendar_id: str) -> dict[str, Any]:
    """Build the tool-facing error dict for a failed calendar operation.

    Messages are redacted first, then whitespace-normalized and truncated to
    200 characters.
    """
    redacted = redact_credential_values(str(exc))
    sanitized = " ".join(redacted.split())[:200]
    error: dict[str, Any] = {
        "status": "error",
        "error": sanitized,
        "error_type": type(exc).__name__,
        "calendar_id": calendar_id,
    }
    if isinstance(exc, CalendarRequestError):
        error["status_code"] = exc.status_code
    if isinstance(exc, RecurringEventError):
        error["code"] = str(exc.code)
    return error
