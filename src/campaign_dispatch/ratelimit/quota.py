"""Counter period math: local calendar days and billing cycles."""

from __future__ import annotations

from datetime import date, datetime, time
from zoneinfo import ZoneInfo

from campaign_dispatch.models import AccountSettings, Channel

from .models import CounterCheck, Period


def _local_midnight(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time(0, 0), tzinfo=tz)


def _add_month(day: date) -> date:
    if day.month == 12:
        return day.replace(year=day.year + 1, month=1)
    return day.replace(month=day.month + 1)


def _sub_month(day: date) -> date:
    if day.month == 1:
        return day.replace(year=day.year - 1, month=12)
    return day.replace(month=day.month - 1)


def day_period(now: datetime, tz: ZoneInfo) -> tuple[str, datetime]:
    """Key of the local day containing ``now`` and the instant the next day begins."""
    local_day = now.astimezone(tz).date()
    next_day = date.fromordinal(local_day.toordinal() + 1)
    return local_day.isoformat(), _local_midnight(next_day, tz).astimezone(now.tzinfo)


def cycle_period(now: datetime, tz: ZoneInfo, anchor_day: int) -> tuple[str, datetime]:
    """Key of the billing cycle containing ``now`` and the instant the next cycle begins.

    Cycles start at local midnight on ``anchor_day`` (1-28) of each month; the
    key is the cycle's start date.
    """
    local_day = now.astimezone(tz).date()
    start = local_day.replace(day=anchor_day)
    if local_day.day < anchor_day:
        start = _sub_month(start)
    next_start = _add_month(start)
    return start.isoformat(), _local_midnight(next_start, tz).astimezone(now.tzinfo)


def counter_checks(account: AccountSettings, channel: Channel, now: datetime) -> list[CounterCheck]:
    """Counters a send on ``channel`` must fit under, in check order."""
    tz = account.tz
    checks = []
    if channel == Channel.SMS:
        key, resets_at = day_period(now, tz)
        checks.append(
            CounterCheck(
                period=Period.DAY,
                period_key=key,
                limit=account.sms_daily_limit,
                resets_at=resets_at,
            )
        )
    key, resets_at = cycle_period(now, tz, account.billing_cycle_anchor_day)
    checks.append(
        CounterCheck(
            period=Period.CYCLE,
            period_key=key,
            limit=account.monthly_credits(channel),
            resets_at=resets_at,
        )
    )
    return checks
