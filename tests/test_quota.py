from datetime import timedelta

import pytest

from spotube.core.errors import QuotaExceeded
from spotube.core.quota import COST_SEARCH, COST_WRITE, QuotaTracker


class TestQuotaTracker:
    def test_consume_and_remaining(self, clock):
        quota = QuotaTracker(daily_limit=200, clock=clock)
        quota.consume(COST_WRITE)
        quota.consume(COST_SEARCH)

        assert quota.used == 150
        assert quota.remaining == 50
        assert quota.limit == 200

    def test_over_budget_raises_without_charging(self, clock):
        quota = QuotaTracker(daily_limit=100, clock=clock)
        quota.consume(60)

        with pytest.raises(QuotaExceeded) as exc_info:
            quota.consume(COST_WRITE, "add vC")

        assert quota.used == 60
        assert exc_info.value.service == "youtube"
        assert exc_info.value.retry_after == 12 * 3600

    def test_resets_at_utc_midnight(self, clock):
        quota = QuotaTracker(daily_limit=100, clock=clock)
        quota.exhaust()
        assert quota.remaining == 0

        clock.advance(seconds=quota.seconds_until_reset())

        assert quota.used == 0
        quota.consume(COST_WRITE)

    def test_seconds_until_reset(self, clock):
        quota = QuotaTracker(clock=clock)
        assert quota.seconds_until_reset() == 12 * 3600

        clock.now = clock.now.replace(hour=23, minute=59, second=59, microsecond=999999)
        assert quota.seconds_until_reset() == 1

    def test_new_day_after_a_full_day(self, clock):
        quota = QuotaTracker(daily_limit=100, clock=clock)
        quota.consume(100)
        clock.now += timedelta(days=1)
        assert quota.remaining == 100
