from __future__ import annotations

from datetime import timedelta
from typing import Dict

from race_engine.domain.constants import TIER_DELAY_APPROVED
from race_engine.domain.models import SupplierTier


# Pending suppliers see the race at the same instant as approved ones: tier
# buys a head start, it never gates eligibility.
TIER_DELAYS: Dict[SupplierTier, timedelta] = {
    SupplierTier.VERIFIED_PARTNER: timedelta(0),
    SupplierTier.APPROVED: TIER_DELAY_APPROVED,
    SupplierTier.PENDING: TIER_DELAY_APPROVED,
}


class SuspendedSupplierError(ValueError):
    """Raised when a suspended supplier reaches the scheduler."""


def is_schedulable(tier: SupplierTier) -> bool:
    return tier in TIER_DELAYS


def tier_delay(tier: SupplierTier) -> timedelta:
    try:
        return TIER_DELAYS[SupplierTier(tier)]
    except KeyError as exc:
        raise SuspendedSupplierError(f"tier {tier!r} is not eligible for broadcast") from exc
