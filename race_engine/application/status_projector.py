from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict

from race_engine.application.race_store import RaceRepositories
from race_engine.clock import SystemClock, ensure_utc, to_iso
from race_engine.domain.constants import PRIORITY_HOLD_DURATION
from race_engine.domain.models import Rfq, RfqStatus
from race_engine.errors import RfqNotFoundError


_PHASE_BY_STATUS = {
    RfqStatus.BIDDING: "open",
    RfqStatus.PRIORITY_HOLD: "priority_hold",
    RfqStatus.AWARDED: "awarded",
    RfqStatus.CLOSED: "closed",
    RfqStatus.CANCELLED: "cancelled",
}


def format_duration(delta: timedelta | float | int | None) -> str:
    """Compact countdown text: ``1d 2h``, ``3h 4m``, ``5m 6s`` or ``7s``."""
    if delta is None:
        return "0s"
    total = delta.total_seconds() if isinstance(delta, timedelta) else float(delta)
    if total < 0:
        return "0s"
    seconds = int(total)
    minutes, hours, days = seconds // 60, seconds // 3600, seconds // 86400
    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def _seconds_until(target: datetime | None, now: datetime) -> int | None:
    if target is None:
        return None
    return max(0, int((target - now).total_seconds()))


@dataclass(frozen=True)
class RaceStatus:
    rfq_id: str
    rfq_type: str
    status: str
    phase: str
    race_opens_at: datetime | None
    seconds_until_open: int | None
    countdown: str | None
    priority_holder_id: str | None
    priority_hold_expires_at: datetime | None
    hold_seconds_remaining: int | None
    hold_progress_percent: float | None
    awarded_to: str | None
    winner_quoted_price: float | None
    deadline: datetime | None
    seconds_until_deadline: int | None
    response_counts: Dict[str, int] = field(default_factory=dict)
    broadcasts: Dict[str, int] = field(default_factory=dict)

    @property
    def total_responses(self) -> int:
        return sum(self.response_counts.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rfq_id": self.rfq_id,
            "rfq_type": self.rfq_type,
            "status": self.status,
            "phase": self.phase,
            "race_opens_at": to_iso(self.race_opens_at),
            "seconds_until_open": self.seconds_until_open,
            "countdown": self.countdown,
            "priority_holder_id": self.priority_holder_id,
            "priority_hold_expires_at": to_iso(self.priority_hold_expires_at),
            "hold_seconds_remaining": self.hold_seconds_remaining,
            "hold_progress_percent": self.hold_progress_percent,
            "awarded_to": self.awarded_to,
            "winner_quoted_price": self.winner_quoted_price,
            "deadline": to_iso(self.deadline),
            "seconds_until_deadline": self.seconds_until_deadline,
            "response_counts": dict(self.response_counts),
            "total_responses": self.total_responses,
            "broadcasts": dict(self.broadcasts),
        }


class RaceStatusProjector:
    def __init__(self, repositories: RaceRepositories, clock=None) -> None:
        self.repos = repositories
        self.clock = clock or SystemClock()

    def project(self, db, rfq_id: str) -> RaceStatus:
        rfq = self.repos.rfqs.get(db, rfq_id)
        if rfq is None:
            raise RfqNotFoundError(details=f"rfq {rfq_id} not found", payload={"rfq_id": rfq_id})
        return self.build(
            rfq,
            now=ensure_utc(self.clock.now()),
            response_counts=self.repos.responses.counts_by_type(db, rfq.id),
            broadcasts=self.repos.broadcasts.tallies(db, rfq.id),
            winner_quoted_price=(
                self.repos.responses.latest_accept_price(db, rfq.id, rfq.awarded_to) if rfq.awarded_to else None
            ),
        )

    @staticmethod
    def build(
        rfq: Rfq,
        *,
        now: datetime,
        response_counts: Dict[str, int] | None = None,
        broadcasts: Dict[str, int] | None = None,
        winner_quoted_price: float | None = None,
    ) -> RaceStatus:
        if rfq.status is RfqStatus.OPEN:
            opened = rfq.race_opens_at is None or rfq.race_opens_at <= now
            phase = "open" if opened else "scheduled"
        else:
            phase = _PHASE_BY_STATUS[rfq.status]

        seconds_until_open = None
        countdown = None
        if phase == "scheduled":
            seconds_until_open = _seconds_until(rfq.race_opens_at, now)
            countdown = format_duration(rfq.race_opens_at - now)

        hold_remaining = None
        hold_progress = None
        if rfq.status is RfqStatus.PRIORITY_HOLD and rfq.priority_hold_expires_at is not None:
            hold_remaining = _seconds_until(rfq.priority_hold_expires_at, now)
            hold_progress = round(100.0 * hold_remaining / PRIORITY_HOLD_DURATION.total_seconds(), 2)
            countdown = format_duration(rfq.priority_hold_expires_at - now)

        seconds_until_deadline = None
        if rfq.deadline is not None and not rfq.status.is_terminal:
            seconds_until_deadline = _seconds_until(rfq.deadline, now)

        return RaceStatus(
            rfq_id=rfq.id,
            rfq_type=rfq.rfq_type.value,
            status=rfq.status.value,
            phase=phase,
            race_opens_at=rfq.race_opens_at,
            seconds_until_open=seconds_until_open,
            countdown=countdown,
            priority_holder_id=rfq.priority_holder_id,
            priority_hold_expires_at=rfq.priority_hold_expires_at,
            hold_seconds_remaining=hold_remaining,
            hold_progress_percent=hold_progress,
            awarded_to=rfq.awarded_to,
            winner_quoted_price=winner_quoted_price,
            deadline=rfq.deadline,
            seconds_until_deadline=seconds_until_deadline,
            response_counts=dict(response_counts or {}),
            broadcasts={"scheduled": 0, "delivered": 0, "viewed": 0} | dict(broadcasts or {}),
        )
