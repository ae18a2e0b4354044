"""Timezone-aware broadcast scheduling.

Each eligible supplier gets one visibility instant: the first business-hours
slot in the supplier's local timezone that is at least ``MIN_RACE_DELAY`` away,
plus the tier head-start offset. Urgent RFQs skip the business-hours rule.
The race opens at the earliest of those instants.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Iterable, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from race_engine.clock import SystemClock, ensure_utc
from race_engine.domain.constants import (
    BUSINESS_DAYS,
    BUSINESS_HOURS_END,
    BUSINESS_HOURS_START,
    DEFAULT_TIMEZONE,
    MIN_RACE_DELAY,
)
from race_engine.domain.models import EligibleSupplier, RfqBroadcast, SupplierTier, Urgency
from race_engine.domain.tier_policy import is_schedulable, tier_delay


logger = logging.getLogger("race_engine.scheduler")

# A business day always shows up within a week.
_MAX_DAY_LOOKAHEAD = 8


@dataclass(frozen=True)
class ScheduledBroadcast:
    supplier_id: str
    tier: SupplierTier
    timezone: str
    scheduled_at: datetime
    local_time: str
    delay_seconds: int

    def to_broadcast(self, rfq_id: str) -> RfqBroadcast:
        return RfqBroadcast(
            rfq_id=rfq_id,
            supplier_id=self.supplier_id,
            scheduled_at=self.scheduled_at,
            tier=self.tier,
            timezone=self.timezone,
        )


@dataclass(frozen=True)
class BroadcastPlan:
    race_opens_at: datetime
    schedules: List[ScheduledBroadcast]

    def broadcasts(self, rfq_id: str) -> List[RfqBroadcast]:
        return [item.to_broadcast(rfq_id) for item in self.schedules]


def resolve_timezone(name: str | None) -> ZoneInfo:
    key = str(name or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_supplier_timezone", extra={"timezone": key, "fallback": DEFAULT_TIMEZONE})
        return ZoneInfo(DEFAULT_TIMEZONE)


def next_business_instant(earliest: datetime, zone: ZoneInfo, reserve: timedelta = timedelta(0)) -> datetime:
    """First instant >= earliest inside local business hours, leaving room for reserve before closing."""
    local = ensure_utc(earliest).astimezone(zone)
    for day_offset in range(_MAX_DAY_LOOKAHEAD):
        day = local.date() + timedelta(days=day_offset)
        if day.weekday() not in BUSINESS_DAYS:
            continue
        opens = datetime.combine(day, time(BUSINESS_HOURS_START), tzinfo=zone)
        closes = datetime.combine(day, time(BUSINESS_HOURS_END), tzinfo=zone)
        candidate = max(local, opens)
        if candidate + reserve < closes:
            return candidate.astimezone(timezone.utc)
    raise RuntimeError(f"no business slot found after {earliest.isoformat()} in {zone.key}")


def is_within_business_hours(instant: datetime, timezone_name: str | None) -> bool:
    local = ensure_utc(instant).astimezone(resolve_timezone(timezone_name))
    if local.weekday() not in BUSINESS_DAYS:
        return False
    return BUSINESS_HOURS_START <= local.hour < BUSINESS_HOURS_END


def format_local_time(instant: datetime, zone: ZoneInfo) -> str:
    return ensure_utc(instant).astimezone(zone).strftime("%a %b %d, %I:%M %p %Z")


class BroadcastScheduler:
    def __init__(self, clock=None) -> None:
        self.clock = clock or SystemClock()

    def schedule_for(self, supplier: EligibleSupplier, urgency: Urgency, now: datetime) -> ScheduledBroadcast:
        zone = resolve_timezone(supplier.timezone)
        offset = tier_delay(supplier.tier)
        earliest = ensure_utc(now) + MIN_RACE_DELAY
        if urgency is Urgency.URGENT:
            base = earliest
        else:
            base = next_business_instant(earliest, zone, reserve=offset)
        scheduled_at = base + offset
        return ScheduledBroadcast(
            supplier_id=supplier.supplier_id,
            tier=supplier.tier,
            timezone=zone.key,
            scheduled_at=scheduled_at,
            local_time=format_local_time(scheduled_at, zone),
            delay_seconds=int(offset.total_seconds()),
        )

    def plan(
        self,
        urgency: Urgency,
        suppliers: Iterable[EligibleSupplier],
        now: datetime | None = None,
    ) -> BroadcastPlan:
        reference = ensure_utc(now or self.clock.now())
        schedules: List[ScheduledBroadcast] = []
        seen: set[str] = set()
        for supplier in suppliers:
            if supplier.supplier_id in seen:
                continue
            seen.add(supplier.supplier_id)
            if not is_schedulable(supplier.tier):
                logger.info(
                    "broadcast_supplier_skipped",
                    extra={"supplier_id": supplier.supplier_id, "tier": supplier.tier.value},
                )
                continue
            schedules.append(self.schedule_for(supplier, urgency, reference))

        schedules.sort(key=lambda item: (item.scheduled_at, item.supplier_id))
        if schedules:
            race_opens_at = schedules[0].scheduled_at
        else:
            race_opens_at = reference + MIN_RACE_DELAY
        return BroadcastPlan(race_opens_at=race_opens_at, schedules=schedules)
