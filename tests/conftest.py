"""
Shared test fixtures.

Provides a controllable clock and event factories so budget windows can be
tested deterministically.
"""

from datetime import datetime, timedelta
from typing import Optional

import pytest

from llm_cost_guard.storage.models import UsageEvent

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


def at(seconds: float) -> datetime:
    """Point in time ``seconds`` after BASE_TIME."""
    return BASE_TIME + timedelta(seconds=seconds)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = BASE_TIME):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def make_event(
    seconds: float,
    model: str = "gpt-4o-mini",
    user_id: Optional[str] = "u1",
    feature: Optional[str] = "chat",
    cost_usd: float = 0.001,
) -> UsageEvent:
    """Usage event created ``seconds`` after BASE_TIME."""
    return UsageEvent(
        model=model,
        input_tokens=100,
        output_tokens=50,
        timestamp=at(seconds),
        created_at=at(seconds),
        cost_usd=cost_usd,
        user_id=user_id,
        feature=feature,
    )


@pytest.fixture
def clock():
    """Fake clock starting at BASE_TIME."""
    return FakeClock()
