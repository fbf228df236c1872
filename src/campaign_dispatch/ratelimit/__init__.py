"""Per-account send counters and plan quotas."""

from .limiter import RateLimiter
from .models import Admission, CounterCheck, Period, RateCounter
from .quota import counter_checks, cycle_period, day_period

__all__ = [
    "RateLimiter",
    "Admission",
    "CounterCheck",
    "Period",
    "RateCounter",
    "counter_checks",
    "cycle_period",
    "day_period",
]
