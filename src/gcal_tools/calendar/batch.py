"""Multipart batch codec for the Google Calendar batch endpoint.

Packs several independent API calls into one ``multipart/mixed`` POST and
parses the ``multipart/mixed`` reply back into one
:class:`~gcal_tools.calendar.models.BatchSubResponse` per request.

Wire format of one request part (CRLF line endings)::

    --<boundary>
    Content-Type: application/http
    Content-ID: <item1>

    GET /calendar/v3/calendars/primary/events?singleEvents=true
    If-Match: "etag"                      (optional custom headers)
    Content-Type: application/json        (only when a body is present)

    {"summary":"..."}

Parts are separated by a blank line and the body ends with
``--<boundary>--``. Responses are correlated to requests strictly by
position; ``Content-ID`` values are never used for matching.

A non-2xx status inside one part is returned as data. Only failures of the
physical exchange raise. Token failures raise immediately; transport errors
and whole-exchange 429/503 replies are retried with exponential backoff.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import httpx

from gcal_tools.calendar.auth import TokenProvider, acquire_token
from gcal_tools.calendar.errors import (
    CalendarRequestError,
    CalendarTransportError,
    safe_google_error_message,
)
from gcal_tools.calendar.models import BatchSubRequest, BatchSubResponse

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_BATCH_ENDPOINT = "https://www.googleapis.com/batch/calendar/v3"
MAX_BATCH_REQUESTS = 50
DEFAULT_BATCH_MAX_RETRIES = 3
DEFAULT_BATCH_BASE_BACKOFF_SECONDS = 1.0
BATCH_RETRY_STATUS_CODES = {429, 503}

_CRLF = "\r\n"
_BOUNDARY_PARAM_PATTERN = re.compile(r"boundary=\"?([^\s\";]+)\"?", re.IGNORECASE)
_BOUNDARY_MARKER_PATTERN = re.compile(r"--([A-Za-z0-9_\-=.]+)")
_STATUS_LINE_PATTERN = re.compile(r"^HTTP/\d(?:\.\d)?\s+(\d{3})")
# How many leading lines of a response body to scan for a boundary declaration.
_BOUNDARY_SCAN_LINES = 10

SleepFn = Callable[[float], Awaitable[Any]]


def new_boundary() -> str:
    return f"batch_{uuid.uuid4().hex}"


def build_batch_body(requests: Sequence[BatchSubRequest], boundary: str) -> str:
    """Serialize sub-requests into a ``multipart/mixed`` body using *boundary*."""
    parts: list[str] = []
    for index, request in enumerate(requests, start=1):
        lines = [
            f"--{boundary}",
            "Content-Type: application/http",
            f"Content-ID: <item{index}>",
            "",
            f"{request.method.upper()} {request.path}",
        ]
        for key, value in (request.headers or {}).items():
            lines.append(f"{key}: {value}")
        if request.body is not None:
            lines.append("Content-Type: application/json")
            lines.append("")
            lines.append(json.dumps(request.body, separators=(",", ":")))
        parts.append(_CRLF.join(lines))

    return f"{(_CRLF + _CRLF).join(parts)}{_CRLF}--{boundary}--"


def boundary_from_content_type(content_type: str | None) -> str | None:
    if not content_type:
        return None
    match = _BOUNDARY_PARAM_PATTERN.search(content_type)
    return match.group(1) if match else None


def _discover_boundary(response_text: str) -> str | None:
    lines = response_text.splitlines()
    for line in lines[:_BOUNDARY_SCAN_LINES]:
        if "content-type:" in line.lower() and "boundary=" in line:
            boundary = boundary_from_content_type(line)
            if boundary:
                return boundary

    match = _BOUNDARY_MARKER_PATTERN.search(response_text)
    return match.group(1) if match else None


def parse_batch_response(
    response_text: str,
    *,
    boundary: str | None = None,
) -> list[BatchSubResponse]:
    """Split a ``multipart/mixed`` reply into ordered sub-responses.

    *boundary* is the provider's boundary from the reply ``Content-Type``
    header; when absent it is discovered from the body. Framing problems
    never raise: an undiscoverable boundary yields an empty list, and a part
    without a status line is kept in place with ``status_code=0``.
    """
    resolved = boundary or _discover_boundary(response_text)
    if not resolved:
        logger.warning("Batch response has no discoverable multipart boundary")
        return []

    chunks = response_text.split(f"--{resolved}")
    responses: list[BatchSubResponse] = []
    for chunk in chunks[1:]:
        stripped = chunk.strip()
        if not stripped or stripped.startswith("--"):
            continue
        responses.append(_parse_response_part(chunk))
    return responses


def _parse_response_part(part: str) -> BatchSubResponse:
    lines = re.split(r"\r?\n", part)

    status_index = -1
    status_code = 0
    for index, line in enumerate(lines):
        match = _STATUS_LINE_PATTERN.match(line)
        if match:
            status_index = index
            status_code = int(match.group(1))
            break

    if status_index == -1:
        logger.warning("Batch response part has no HTTP status line; keeping raw text")
        return BatchSubResponse(status_code=0, headers={}, body=part.strip())

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_index + 1, len(lines)):
        line = lines[index]
        if not line.strip():
            body_start = index + 1
            break
        key, sep, value = line.partition(":")
        if sep and key.strip():
            headers[key.strip()] = value.strip()

    body_lines = lines[body_start:]
    while body_lines and not body_lines[-1].strip():
        body_lines.pop()

    body: Any = None
    body_text = "\n".join(body_lines)
    if body_text.strip():
        try:
            body = json.loads(body_text)
        except json.JSONDecodeError:
            body = body_text

    return BatchSubResponse(status_code=status_code, headers=headers, body=body)


class BatchRequestHandler:
    """Executes batch exchanges against the Google Calendar batch endpoint.

    Every call builds its own boundary, so one handler can serve concurrent
    callers without locking.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        http_client: httpx.AsyncClient | None = None,
        *,
        endpoint: str = GOOGLE_CALENDAR_BATCH_ENDPOINT,
        max_retries: int = DEFAULT_BATCH_MAX_RETRIES,
        base_backoff_seconds: float = DEFAULT_BATCH_BASE_BACKOFF_SECONDS,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._token_provider = token_provider
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._endpoint = endpoint
        self._max_retries = max_retries
        self._base_backoff_seconds = base_backoff_seconds
        self._sleep = sleep

    async def execute_batch(
        self,
        requests: Sequence[BatchSubRequest | dict[str, Any]],
    ) -> list[BatchSubResponse]:
        """Submit *requests* as one exchange and return responses in request order."""
        normalized = [
            request if isinstance(request, BatchSubRequest) else BatchSubRequest(**request)
            for request in requests
        ]
        if not normalized:
            return []
        if len(normalized) > MAX_BATCH_REQUESTS:
            raise ValueError(
                f"Batch requests cannot exceed {MAX_BATCH_REQUESTS} requests per batch"
            )

        boundary = new_boundary()
        body = build_batch_body(normalized, boundary)
        response = await self._post_with_retry(body, boundary)

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

        responses = parse_batch_response(
            response.text,
            boundary=boundary_from_content_type(response.headers.get("Content-Type")),
        )
        if len(responses) != len(normalized):
            logger.warning(
                "Batch response part count mismatch (requested=%d, received=%d)",
                len(normalized),
                len(responses),
            )
        return responses

    async def _post_with_retry(self, body: str, boundary: str) -> httpx.Response:
        force_refresh = False
        refreshed = False
        attempt = 0
        while True:
            # Token failures are not transport failures: they propagate unretried.
            token = await acquire_token(self._token_provider, force_refresh=force_refresh)
            force_refresh = False
            try:
                response = await self._http_client.post(
                    self._endpoint,
                    content=body.encode("utf-8"),
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Content-Type": f"multipart/mixed; boundary={boundary}",
                    },
                )
            except httpx.TransportError as exc:
                if attempt >= self._max_retries:
                    raise CalendarTransportError(
                        f"Batch request failed after {attempt + 1} attempt(s): {exc}"
                    ) from exc
                backoff = self._base_backoff_seconds * (2**attempt)
                logger.warning(
                    "Batch request transport error, retrying in %.1fs (attempt %d/%d): %s",
                    backoff,
                    attempt + 1,
                    self._max_retries,
                    exc,
                )
                await self._sleep(backoff)
                attempt += 1
                continue

            if response.status_code == 401 and not refreshed:
                refreshed = True
                force_refresh = True
                continue

            if response.status_code in BATCH_RETRY_STATUS_CODES and attempt < self._max_retries:
                backoff = _retry_after_seconds(response) or self._base_backoff_seconds * (
                    2**attempt
                )
                logger.warning(
                    "Batch request rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                    response.status_code,
                    backoff,
                    attempt + 1,
                    self._max_retries,
                )
                await self._sleep(backoff)
                attempt += 1
                continue

            return response

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


def _retry_after_seconds(response: httpx.Response) -> float | None:
    if response.status_code != 429:
        return None
    retry_after = response.headers.get("Retry-After")
    if retry_after is None:
        return None
    try:
        return float(retry_after)
    except ValueError:
        return None
