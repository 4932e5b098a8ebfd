"""FastMCP server assembly.

Running a transport (stdio, HTTP) is left to the caller:
``create_server(load_config(path)).run()``.
"""

from __future__ import annotations

import logging
from pathlib import Path

import httpx
from fastmcp import FastMCP

from gcal_tools.calendar.auth import RefreshTokenProvider, TokenProvider
from gcal_tools.calendar.client import GoogleCalendarClient
from gcal_tools.calendar.errors import CalendarAuthError
from gcal_tools.calendar.tools import CalendarToolset
from gcal_tools.config import ToolsConfig, load_config
from gcal_tools.core.logging import configure_logging

logger = logging.getLogger(__name__)

SERVER_NAME = "gcal-tools"


def build_client(
    config: ToolsConfig,
    *,
    token_provider: TokenProvider | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> GoogleCalendarClient:
    """Build a calendar client from *config*.

    Without an explicit *token_provider* the ``[credentials]`` section is
    required and a refresh-token provider is created from it.
    """
    calendar = config.calendar
    http_client = http_client or httpx.AsyncClient(timeout=calendar.request_timeout_s)
    if token_provider is None:
        if config.credentials is None:
            raise CalendarAuthError(
                "No token provider given and no [credentials] section configured"
            )
        token_provider = RefreshTokenProvider(config.credentials, http_client)

    return GoogleCalendarClient(
        token_provider,
        http_client,
        api_base_url=calendar.api_base_url,
        batch_endpoint=calendar.batch_endpoint,
        max_retries=calendar.max_batch_retries,
        base_backoff_seconds=calendar.retry_base_backoff_s,
    )


def create_server(
    config: ToolsConfig,
    *,
    token_provider: TokenProvider | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastMCP:
    """Create a FastMCP server with the calendar tools registered."""
    client = build_client(config, token_provider=token_provider, http_client=http_client)
    mcp = FastMCP(SERVER_NAME)
    CalendarToolset(
        client,
        calendar_id=config.calendar.calendar_id,
        timezone=config.calendar.timezone,
        thresholds=config.calendar.conflicts,
    ).register_tools(mcp)
    logger.info(
        "Registered calendar tools (calendar_id=%s, timezone=%s)",
        config.calendar.calendar_id,
        config.calendar.timezone,
    )
    return mcp


def serve(config_path: Path, *, transport: str = "stdio") -> None:
    """Load config, configure logging, and run the server until the transport exits."""
    config = load_config(config_path)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=Path(config.logging.log_file) if config.logging.log_file else None,
    )
    create_server(config).run(transport=transport)
