from __future__ import annotations

import asyncio

import pytest

from fleet.core.clock import ManualClock
from fleet.core.event_bus import EventBus


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=1_700_000_000.0)


@pytest.fixture
def settle():
    """Let scheduled callbacks and freshly created tasks run."""

    async def _settle(rounds: int = 50) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle
