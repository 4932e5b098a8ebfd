"""Shared test fixtures for the gcal-tools test suite."""

from __future__ import annotations

import pytest


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records requested delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()
