"""Race status lifecycle.

``apply`` is a pure function over an RFQ snapshot and an event: it returns the
``Transition`` to persist or raises ``TransitionError``. It performs no I/O and
never looks at the specification payload, only at ``rfq_type``.

    service:   Open -> Bidding -> Awarded | Closed | cancelled
    custom:    Open -> Bidding -> priority_hold -> Awarded | Bidding
    commodity: Open -> Bidding -> Awarded (first accept)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Union

from race_engine.clock import ensure_utc
from race_engine.domain.constants import PRIORITY_HOLD_DURATION
from race_engine.domain.models import Rfq, RfqStatus, RfqType
from race_engine.errors import RaceErrorKind, TransitionError


@dataclass(frozen=True)
class RaceWindowReached:
    name = "race_window_reached"


@dataclass(frozen=True)
class AcceptReceived:
    supplier_id: str
    name = "accept_received"


@dataclass(frozen=True)
class BuyerConfirmsHold:
    expected_holder_id: str | None = None
    name = "buyer_confirms_hold"


@dataclass(frozen=True)
class BuyerReleasesHold:
    name = "buyer_releases_hold"


@dataclass(frozen=True)
class HoldExpired:
    holder_id: str
    name = "hold_expired"


@dataclass(frozen=True)
class BuyerSelectsWinner:
    supplier_id: str
    name = "buyer_selects_winner"


@dataclass(frozen=True)
class DeadlineElapsed:
    name = "deadline_elapsed"


@dataclass(frozen=True)
class BuyerCloses:
    name = "buyer_closes"


@dataclass(frozen=True)
class BuyerCancels:
    name = "buyer_cancels"


RaceEvent = Union[
    RaceWindowReached,
    AcceptReceived,
    BuyerConfirmsHold,
    BuyerReleasesHold,
    HoldExpired,
    BuyerSelectsWinner,
    DeadlineElapsed,
    BuyerCloses,
    BuyerCancels,
]


@dataclass(frozen=True)
class Transition:
    previous: Rfq
    rfq: Rfq
    event: RaceEvent
    fact: str
    facts: Mapping[str, Any] = field(default_factory=dict)

    @property
    def from_status(self) -> RfqStatus:
        return self.previous.status

    @property
    def to_status(self) -> RfqStatus:
        return self.rfq.status


def _invalid(rfq: Rfq, event: RaceEvent, reason: str) -> TransitionError:
    return TransitionError(
        RaceErrorKind.INVALID_STATE,
        details=f"{event.name} not allowed from {rfq.status.value}: {reason}",
        payload={"rfq_id": rfq.id, "status": rfq.status.value},
    )


def _lost(rfq: Rfq, event: RaceEvent, kind: RaceErrorKind) -> TransitionError:
    return TransitionError(
        kind,
        details=f"{event.name} lost the race on rfq {rfq.id} ({rfq.status.value})",
        payload={"rfq_id": rfq.id, "status": rfq.status.value},
    )


def _cleared_hold(**changes: Any) -> Dict[str, Any]:
    changes.update({"priority_holder_id": None, "priority_hold_expires_at": None})
    return changes


def _transition(rfq: Rfq, event: RaceEvent, fact: str, facts: Mapping[str, Any] | None = None, **changes: Any) -> Transition:
    return Transition(previous=rfq, rfq=rfq.with_changes(**changes), event=event, fact=fact, facts=dict(facts or {}))


def _on_window_reached(rfq: Rfq, event: RaceWindowReached, now: datetime) -> Transition:
    if rfq.status is not RfqStatus.OPEN:
        raise _invalid(rfq, event, "race already started")
    if rfq.race_opens_at is not None and now < rfq.race_opens_at:
        raise _invalid(rfq, event, "broadcast window not reached")
    return _transition(rfq, event, "race_opened", status=RfqStatus.BIDDING)


def _on_accept(rfq: Rfq, event: AcceptReceived, now: datetime) -> Transition:
    if rfq.status is RfqStatus.PRIORITY_HOLD:
        raise _lost(rfq, event, RaceErrorKind.HOLD_ACTIVE)
    if rfq.status is not RfqStatus.BIDDING:
        raise _invalid(rfq, event, "race is not accepting")

    if rfq.rfq_type is RfqType.COMMODITY:
        return _transition(
            rfq,
            event,
            "rfq_awarded",
            {"supplier_id": event.supplier_id},
            status=RfqStatus.AWARDED,
            awarded_to=event.supplier_id,
        )
    if rfq.rfq_type is RfqType.CUSTOM:
        expires_at = now + PRIORITY_HOLD_DURATION
        return _transition(
            rfq,
            event,
            "hold_granted",
            {"supplier_id": event.supplier_id, "hold_expires_at": expires_at},
            status=RfqStatus.PRIORITY_HOLD,
            priority_holder_id=event.supplier_id,
            priority_hold_expires_at=expires_at,
        )
    raise _invalid(rfq, event, "service RFQs are awarded by buyer selection")


def _on_confirm_hold(rfq: Rfq, event: BuyerConfirmsHold, now: datetime) -> Transition:
    if rfq.status is not RfqStatus.PRIORITY_HOLD or rfq.priority_holder_id is None:
        raise _invalid(rfq, event, "no priority hold to confirm")
    if event.expected_holder_id is not None and event.expected_holder_id != rfq.priority_holder_id:
        raise _invalid(rfq, event, "priority holder changed since the hold was granted")
    if rfq.priority_hold_expires_at is not None and rfq.priority_hold_expires_at <= now:
        raise _invalid(rfq, event, "priority hold already expired")
    holder = rfq.priority_holder_id
    return _transition(
        rfq,
        event,
        "rfq_awarded",
        {"supplier_id": holder},
        **_cleared_hold(status=RfqStatus.AWARDED, awarded_to=holder),
    )


def _on_release_hold(rfq: Rfq, event: BuyerReleasesHold, now: datetime) -> Transition:
    if rfq.status is not RfqStatus.PRIORITY_HOLD:
        raise _invalid(rfq, event, "no priority hold to release")
    return _transition(
        rfq,
        event,
        "hold_released",
        {"supplier_id": rfq.priority_holder_id},
        **_cleared_hold(status=RfqStatus.BIDDING),
    )


def _on_hold_expired(rfq: Rfq, event: HoldExpired, now: datetime) -> Transition:
    if rfq.status is not RfqStatus.PRIORITY_HOLD:
        raise _invalid(rfq, event, "no priority hold to expire")
    if rfq.priority_holder_id != event.holder_id:
        raise _invalid(rfq, event, "hold belongs to a different supplier")
    if rfq.priority_hold_expires_at is None or rfq.priority_hold_expires_at > now:
        raise _invalid(rfq, event, "priority hold still active")
    return _transition(
        rfq,
        event,
        "hold_expired",
        {"supplier_id": event.holder_id},
        **_cleared_hold(status=RfqStatus.BIDDING),
    )


def _on_select_winner(rfq: Rfq, event: BuyerSelectsWinner, now: datetime) -> Transition:
    if rfq.rfq_type is not RfqType.SERVICE:
        raise _invalid(rfq, event, "only service RFQs are awarded by buyer selection")
    if rfq.status is not RfqStatus.BIDDING:
        raise _invalid(rfq, event, "race is not in bidding")
    if rfq.deadline is not None and rfq.deadline <= now:
        raise TransitionError(
            RaceErrorKind.DEADLINE_PASSED,
            details=f"deadline of rfq {rfq.id} elapsed before selection",
            payload={"rfq_id": rfq.id},
        )
    return _transition(
        rfq,
        event,
        "rfq_awarded",
        {"supplier_id": event.supplier_id},
        status=RfqStatus.AWARDED,
        awarded_to=event.supplier_id,
    )


def _on_deadline_elapsed(rfq: Rfq, event: DeadlineElapsed, now: datetime) -> Transition:
    if rfq.status not in (RfqStatus.OPEN, RfqStatus.BIDDING):
        raise _invalid(rfq, event, "only open or bidding races close on deadline")
    if rfq.deadline is None or rfq.deadline > now:
        raise _invalid(rfq, event, "deadline not reached")
    return _transition(rfq, event, "rfq_closed", {"reason": "deadline_elapsed"}, status=RfqStatus.CLOSED)


def _on_close(rfq: Rfq, event: BuyerCloses, now: datetime) -> Transition:
    if rfq.status not in (RfqStatus.OPEN, RfqStatus.BIDDING):
        raise _invalid(rfq, event, "only open or bidding races can be closed")
    return _transition(rfq, event, "rfq_closed", {"reason": "buyer_closed"}, status=RfqStatus.CLOSED)


def _on_cancel(rfq: Rfq, event: BuyerCancels, now: datetime) -> Transition:
    return _transition(rfq, event, "rfq_cancelled", **_cleared_hold(status=RfqStatus.CANCELLED))


_HANDLERS: Dict[type, Callable[[Rfq, Any, datetime], Transition]] = {
    RaceWindowReached: _on_window_reached,
    AcceptReceived: _on_accept,
    BuyerConfirmsHold: _on_confirm_hold,
    BuyerReleasesHold: _on_release_hold,
    HoldExpired: _on_hold_expired,
    BuyerSelectsWinner: _on_select_winner,
    DeadlineElapsed: _on_deadline_elapsed,
    BuyerCloses: _on_close,
    BuyerCancels: _on_cancel,
}


def apply(rfq: Rfq, event: RaceEvent, now: datetime) -> Transition:
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"unsupported race event: {event!r}")
    if rfq.status.is_terminal:
        if isinstance(event, AcceptReceived) and rfq.status is RfqStatus.AWARDED:
            raise _lost(rfq, event, RaceErrorKind.ALREADY_AWARDED)
        raise _invalid(rfq, event, "terminal status")

    transition = handler(rfq, event, ensure_utc(now))
    violations = transition.rfq.invariant_violations()
    if violations:
        # Unreachable through the handlers above.
        raise AssertionError(f"transition {event.name} produced invalid rfq {rfq.id}: {violations}")
    return transition


def catch_up(rfq: Rfq, now: datetime) -> list[Transition]:
    """Clock-driven transitions already due for this snapshot, in order."""
    now = ensure_utc(now)
    transitions: list[Transition] = []
    current = rfq
    if current.status is RfqStatus.OPEN and current.race_opens_at is not None and current.race_opens_at <= now:
        step = apply(current, RaceWindowReached(), now)
        transitions.append(step)
        current = step.rfq
    if (
        current.status is RfqStatus.PRIORITY_HOLD
        and current.priority_hold_expires_at is not None
        and current.priority_hold_expires_at <= now
    ):
        step = apply(current, HoldExpired(holder_id=current.priority_holder_id), now)
        transitions.append(step)
        current = step.rfq
    return transitions
