"""Tests for send counters, plan quotas and the rate limiter."""

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import pytest

from campaign_dispatch.errors import RateLimited
from campaign_dispatch.models import AccountSettings, Channel
from campaign_dispatch.ratelimit import (
    Period,
    RateLimiter,
    counter_checks,
    cycle_period,
    day_period,
)

UTC_ZONE = ZoneInfo("UTC")
NEW_YORK = ZoneInfo("America/New_York")


class TestPeriods:
    """Tests for counter period math."""

    def test_day_period_uses_local_date(self):
        # 22:00 on March 1st in New York
        now = datetime(2026, 3, 2, 3, 0, tzinfo=UTC)
        key, resets_at = day_period(now, NEW_YORK)
        assert key == "2026-03-01"
        assert resets_at == datetime(2026, 3, 2, 5, 0, tzinfo=UTC)

    def test_cycle_after_anchor(self):
        key, resets_at = cycle_period(datetime(2026, 3, 20, tzinfo=UTC), UTC_ZONE, 15)
        assert key == "2026-03-15"
        assert resets_at == datetime(2026, 4, 15, tzinfo=UTC)

    def test_cycle_before_anchor(self):
        key, resets_at = cycle_period(datetime(2026, 3, 2, tzinfo=UTC), UTC_ZONE, 15)
        assert key == "2026-02-15"
        assert resets_at == datetime(2026, 3, 15, tzinfo=UTC)

    def test_cycle_wraps_year(self):
        key, resets_at = cycle_period(datetime(2026, 12, 10, tzinfo=UTC), UTC_ZONE, 1)
        assert key == "2026-12-01"
        assert resets_at == datetime(2027, 1, 1, tzinfo=UTC)

    def test_cycle_before_anchor_in_january(self):
        key, _ = cycle_period(datetime(2027, 1, 3, tzinfo=UTC), UTC_ZONE, 5)
        assert key == "2026-12-05"

    def test_counter_checks(self):
        account = AccountSettings(store_id="store-1", sms_daily_limit=10, sms_monthly_credits=99)
        now = datetime(2026, 3, 2, 15, 0, tzinfo=UTC)

        sms = counter_checks(account, Channel.SMS, now)
        assert [c.period for c in sms] == [Period.DAY, Period.CYCLE]
        assert [c.limit for c in sms] == [10, 99]

        email = counter_checks(account, Channel.EMAIL, now)
        assert [c.period for c in email] == [Period.CYCLE]
        assert email[0].limit == account.email_monthly_credits


class TestRateLimiter:
    """Tests for RateLimiter."""

    @pytest.fixture
    def limiter(self, repository):
        return RateLimiter(repository)

    def _configure(self, repository, **fields):
        repository.save_account_settings(AccountSettings(store_id="store-1", **fields))

    def test_email_quota(self, limiter, repository, clock):
        self._configure(repository, email_monthly_credits=2)
        assert limiter.try_admit("store-1", Channel.EMAIL, clock()).admitted is True
        assert limiter.try_admit("store-1", Channel.EMAIL, clock()).admitted is True

        rejected = limiter.try_admit("store-1", Channel.EMAIL, clock())
        assert rejected.admitted is False
        assert rejected.reason == "quota_exceeded"
        assert rejected.quota_exhausted is True
        assert rejected.retry_after == datetime(2026, 4, 1, tzinfo=UTC)
        assert repository.get_counter("store-1", Channel.EMAIL, Period.CYCLE, "2026-03-01") == 2

    def test_sms_daily_limit(self, limiter, repository, clock):
        self._configure(repository, timezone="America/New_York", sms_daily_limit=1)
        assert limiter.try_admit("store-1", Channel.SMS, clock()).admitted is True

        rejected = limiter.try_admit("store-1", Channel.SMS, clock())
        assert rejected.admitted is False
        assert rejected.reason == "day_limit_reached"
        assert rejected.quota_exhausted is False
        # Next local midnight in New York
        assert rejected.retry_after == datetime(2026, 3, 3, 5, 0, tzinfo=UTC)

        clock.set(datetime(2026, 3, 3, 5, 0, tzinfo=UTC))
        assert limiter.try_admit("store-1", Channel.SMS, clock()).admitted is True

    def test_rejection_rolls_back_other_counters(self, limiter, repository, clock):
        self._configure(repository, sms_daily_limit=10, sms_monthly_credits=1)
        assert limiter.try_admit("store-1", Channel.SMS, clock()).admitted is True

        rejected = limiter.try_admit("store-1", Channel.SMS, clock())
        assert rejected.reason == "cycle_limit_reached"
        assert repository.get_counter("store-1", Channel.SMS, Period.DAY, "2026-03-02") == 1

    def test_channels_counted_separately(self, limiter, repository, clock):
        self._configure(repository, email_monthly_credits=1, sms_monthly_credits=1)
        assert limiter.try_admit("store-1", Channel.EMAIL, clock()).admitted is True
        assert limiter.try_admit("store-1", Channel.SMS, clock()).admitted is True

    def test_accounts_counted_separately(self, limiter, repository, clock):
        self._configure(repository, email_monthly_credits=1)
        assert limiter.try_admit("store-1", Channel.EMAIL, clock()).admitted is True
        assert limiter.try_admit("store-2", Channel.EMAIL, clock()).admitted is True

    def test_acquire_raises(self, limiter, repository, clock):
        self._configure(repository, email_monthly_credits=0)
        with pytest.raises(RateLimited) as exc_info:
            limiter.acquire("store-1", Channel.EMAIL, clock())
        assert exc_info.value.reason == "quota_exceeded"
        assert exc_info.value.retry_after == datetime(2026, 4, 1, tzinfo=UTC)
        assert exc_info.value.to_dict()["error"] == "RATE_LIMITED"

    def test_concurrent_admissions_never_exceed_limit(self, limiter, repository, clock):
        self._configure(repository, email_monthly_credits=25)

        def attempt(_):
            return limiter.try_admit("store-1", Channel.EMAIL, clock()).admitted

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(80)))

        assert sum(results) == 25
        assert repository.get_counter("store-1", Channel.EMAIL, Period.CYCLE, "2026-03-01") == 25

    def test_get_usage(self, limiter, repository, clock):
        self._configure(repository, sms_daily_limit=5, sms_monthly_credits=100)
        limiter.try_admit("store-1", Channel.SMS, clock())
        limiter.try_admit("store-1", Channel.SMS, clock())

        usage = limiter.get_usage("store-1", clock())
        assert usage["sms"]["day"]["used"] == 2
        assert usage["sms"]["day"]["remaining"] == 3
        assert usage["sms"]["cycle"]["used"] == 2
        assert usage["sms"]["cycle"]["limit"] == 100
        assert usage["email"]["cycle"]["used"] == 0
        assert "day" not in usage["email"]

    def test_adjust_counter_floors_at_zero(self, limiter, repository, clock):
        limiter.try_admit("store-1", Channel.EMAIL, clock())
        count = limiter.adjust_counter("store-1", Channel.EMAIL, Period.CYCLE, "2026-03-01", -5)
        assert count == 0
        count = limiter.adjust_counter("store-1", Channel.EMAIL, Period.CYCLE, "2026-03-01", 3)
        assert count == 3
        counters = repository.list_counters("store-1")
        assert [(c.channel, c.period, c.count) for c in counters] == [
            (Channel.EMAIL, Period.CYCLE, 3)
        ]
