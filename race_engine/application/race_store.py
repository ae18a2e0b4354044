from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Sequence

from race_engine.core.event_bus import (
    DomainEvent,
    PriorityHoldGranted,
    PriorityHoldReleased,
    RaceOpened,
    RfqAwarded,
    RfqCancelled,
    RfqClosed,
)
from race_engine.domain.models import Rfq
from race_engine.domain.state_machine import Transition
from race_engine.infrastructure.repositories import (
    BroadcastRepository,
    ResponseRepository,
    RfqRepository,
    StatusEventRepository,
)
from race_engine.observability import observe_race_transition


logger = logging.getLogger("race_engine.store")


@dataclass(frozen=True)
class RaceRepositories:
    rfqs: RfqRepository
    responses: ResponseRepository
    broadcasts: BroadcastRepository
    status_events: StatusEventRepository

    @classmethod
    def for_tenant(cls, tenant_id: str) -> "RaceRepositories":
        return cls(
            rfqs=RfqRepository(tenant_id=tenant_id),
            responses=ResponseRepository(tenant_id=tenant_id),
            broadcasts=BroadcastRepository(tenant_id=tenant_id),
            status_events=StatusEventRepository(tenant_id=tenant_id),
        )

    @property
    def tenant_id(self) -> str:
        return self.rfqs.tenant_id


def persist_transitions(
    db,
    repos: RaceRepositories,
    original: Rfq,
    transitions: Sequence[Transition],
    *,
    now: datetime,
) -> Rfq:
    """Write the final state of a transition chain as one conditional update.

    The caller owns commit and rollback. ``StorageConflictError`` propagates.
    """
    if not transitions:
        return original
    stored = repos.rfqs.compare_and_set(db, original, transitions[-1].rfq, now=now)
    for transition in transitions:
        repos.status_events.add_event(
            db,
            entity="rfq",
            entity_id=original.id,
            from_status=transition.from_status.value,
            to_status=transition.to_status.value,
            reason=transition.fact,
            version=stored.version,
            occurred_at=now,
        )
    return stored


def record_transitions(transitions: Sequence[Transition]) -> None:
    """Metrics and logs for transitions that have been committed."""
    for transition in transitions:
        observe_race_transition(transition.fact, transition.to_status.value)
        logger.info(
            "race_transition",
            extra={
                "rfq_id": transition.rfq.id,
                "tenant_id": transition.rfq.tenant_id,
                "fact": transition.fact,
                "from_status": transition.from_status.value,
                "to_status": transition.to_status.value,
            },
        )


def events_for_transitions(transitions: Sequence[Transition], *, occurred_at: datetime) -> List[DomainEvent]:
    events: List[DomainEvent] = []
    for transition in transitions:
        rfq = transition.rfq
        base = {"tenant_id": rfq.tenant_id, "rfq_id": rfq.id, "occurred_at": occurred_at}
        facts = transition.facts
        if transition.fact == "race_opened":
            events.append(RaceOpened(**base))
        elif transition.fact == "rfq_awarded":
            events.append(RfqAwarded(supplier_id=str(facts.get("supplier_id")), rfq_type=rfq.rfq_type.value, **base))
        elif transition.fact == "hold_granted":
            events.append(
                PriorityHoldGranted(
                    supplier_id=str(facts.get("supplier_id")),
                    expires_at=facts["hold_expires_at"],
                    **base,
                )
            )
        elif transition.fact in ("hold_released", "hold_expired"):
            events.append(
                PriorityHoldReleased(
                    supplier_id=str(facts.get("supplier_id")),
                    reason="expired" if transition.fact == "hold_expired" else "released",
                    **base,
                )
            )
        elif transition.fact == "rfq_closed":
            events.append(RfqClosed(reason=str(facts.get("reason") or "deadline_elapsed"), **base))
        elif transition.fact == "rfq_cancelled":
            events.append(RfqCancelled(previous_status=transition.from_status.value, **base))
    return events
