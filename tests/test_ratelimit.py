"""Tests for the send budget."""

from datetime import datetime, timezone

import pytest

from neurodesk.providers.base import RateLimitInfo
from neurodesk.ratelimit import SendBudget


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestFallbackWindow:
    """Test counting without server data."""

    def test_defaults_from_config(self, clock):
        budget = SendBudget(clock=clock)
        assert budget.limit == 60
        assert budget.window_seconds == 60

    def test_blocks_after_limit(self, clock):
        budget = SendBudget(limit=2, window_seconds=60, clock=clock)
        assert budget.before_send()
        assert budget.before_send()
        assert not budget.before_send()
        assert budget.fallback_remaining() == 0

    def test_window_resets(self, clock):
        budget = SendBudget(limit=1, window_seconds=60, clock=clock)
        assert budget.before_send()
        assert not budget.can_send()
        clock.advance(61)
        assert budget.can_send()
        assert budget.before_send()

    def test_no_block_when_disabled(self, clock):
        budget = SendBudget(limit=1, window_seconds=60, block_when_exhausted=False, clock=clock)
        budget.before_send()
        assert budget.before_send()

    def test_clamping(self, clock):
        budget = SendBudget(limit=0, window_seconds=10 ** 9, clock=clock)
        assert budget.limit == 1
        assert budget.window_seconds == 24 * 3600
        budget.set_limit(50_000)
        assert budget.limit == 10_000

    def test_set_window_restarts_count(self, clock):
        budget = SendBudget(limit=1, window_seconds=60, clock=clock)
        budget.before_send()
        budget.set_window(30)
        assert budget.can_send()


class TestServerData:
    """Test decisions driven by response headers."""

    def test_remaining_allows(self, clock):
        budget = SendBudget(limit=1, clock=clock)
        budget.update(RateLimitInfo(limit=100, remaining=5))
        for _ in range(3):
            assert budget.before_send()
        assert budget.used == 0

    def test_exhausted_until_reset(self, clock):
        budget = SendBudget(clock=clock)
        reset = datetime.fromtimestamp(clock.now + 30, tz=timezone.utc)
        budget.update(RateLimitInfo(limit=100, remaining=0, reset_at=reset))

        assert not budget.can_send()
        clock.advance(31)
        assert budget.can_send()

    def test_exhausted_without_reset_allows(self, clock):
        budget = SendBudget(clock=clock)
        budget.update(RateLimitInfo(limit=100, remaining=0))
        assert budget.can_send()

    def test_empty_info_falls_back(self, clock):
        budget = SendBudget(limit=1, clock=clock)
        budget.update(RateLimitInfo())
        assert not budget.uses_server_data
        budget.before_send()
        assert not budget.can_send()

    def test_none_clears_server_data(self, clock):
        budget = SendBudget(clock=clock)
        budget.update(RateLimitInfo(remaining=3))
        budget.update(None)
        assert budget.server is None
