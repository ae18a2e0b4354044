from __future__ import annotations

from datetime import timedelta


PRIORITY_HOLD_DURATION = timedelta(hours=2)
TIER_DELAY_APPROVED = timedelta(seconds=30)
MIN_RACE_DELAY = timedelta(minutes=5)

BUSINESS_HOURS_START = 9
BUSINESS_HOURS_END = 18
# Monday=0 ... Friday=4
BUSINESS_DAYS = frozenset({0, 1, 2, 3, 4})

DEFAULT_TIMEZONE = "UTC"

SWEEPER_MIN_INTERVAL_SECONDS = 5
SWEEPER_MAX_INTERVAL_SECONDS = 30
SWEEPER_DEFAULT_INTERVAL_SECONDS = 10
