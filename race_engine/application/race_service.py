from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Iterable, List

from race_engine.application.arbitrator import ResponseArbitrator
from race_engine.application.race_store import (
    RaceRepositories,
    events_for_transitions,
    persist_transitions,
    record_transitions,
)
from race_engine.application.status_projector import RaceStatus, RaceStatusProjector
from race_engine.clock import SystemClock, ensure_utc
from race_engine.core.event_bus import EventBus, RaceCreated, get_event_bus
from race_engine.domain.contracts import Outcome, ResponseSubmission
from race_engine.domain.models import EligibleSupplier, ResponseType, Rfq, RfqBroadcast, RfqStatus, RfqType
from race_engine.domain.state_machine import (
    BuyerCancels,
    BuyerCloses,
    BuyerConfirmsHold,
    BuyerReleasesHold,
    BuyerSelectsWinner,
    RaceEvent,
    Transition,
    apply,
    catch_up,
)
from race_engine.errors import (
    BroadcastNotDueError,
    BroadcastNotFoundError,
    RfqIdConflictError,
    RfqNotFoundError,
    StorageConflictError,
    SupplierNotAcceptedError,
    ValidationError,
)
from race_engine.observability import observe_storage_conflict
from race_engine.scheduling.broadcast_scheduler import BroadcastPlan, BroadcastScheduler


logger = logging.getLogger("race_engine.service")

MAX_CONFLICT_RETRIES = 1


@dataclass(frozen=True)
class RaceCreation:
    rfq: Rfq
    race_opens_at: datetime
    created: bool
    broadcasts_added: int
    plan: BroadcastPlan | None = None
    broadcasts: List[RfqBroadcast] = field(default_factory=list)


class RaceService:
    """Inbound boundary of the race engine.

    Every method takes an open ``Database`` and the owning tenant. Methods that
    change state commit before returning and publish domain events only after
    the commit succeeded.
    """

    def __init__(
        self,
        *,
        clock=None,
        scheduler: BroadcastScheduler | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.scheduler = scheduler or BroadcastScheduler(clock=self.clock)
        self.event_bus = event_bus or get_event_bus()

    def _now(self) -> datetime:
        return ensure_utc(self.clock.now())

    def _load(self, db, repos: RaceRepositories, rfq_id: str) -> Rfq:
        rfq = repos.rfqs.get(db, rfq_id)
        if rfq is None:
            raise RfqNotFoundError(details=f"rfq {rfq_id} not found", payload={"rfq_id": rfq_id})
        return rfq

    def create_race(self, db, *, tenant_id: str, rfq: Rfq, suppliers: Iterable[EligibleSupplier]) -> RaceCreation:
        repos = RaceRepositories.for_tenant(tenant_id)
        eligible = list(suppliers)
        now = self._now()

        existing = repos.rfqs.get(db, rfq.id)
        if existing is None:
            plan = self.scheduler.plan(rfq.urgency, eligible, now)
            candidate = rfq.with_changes(
                tenant_id=repos.tenant_id,
                status=RfqStatus.OPEN,
                priority_holder_id=None,
                priority_hold_expires_at=None,
                awarded_to=None,
                race_opens_at=plan.race_opens_at,
                created_at=now,
                version=0,
            )
            try:
                inserted = repos.rfqs.insert(db, candidate, now=now)
                if inserted:
                    added = repos.broadcasts.insert_missing(db, plan.broadcasts(candidate.id), now=now)
                    repos.status_events.add_event(
                        db,
                        entity="rfq",
                        entity_id=candidate.id,
                        from_status=None,
                        to_status=RfqStatus.OPEN.value,
                        reason="race_created",
                        version=candidate.version,
                        occurred_at=now,
                    )
                    db.commit()
                else:
                    db.rollback()
            except Exception:
                db.rollback()
                raise

            if inserted:
                logger.info(
                    "race_created",
                    extra={
                        "rfq_id": candidate.id,
                        "tenant_id": repos.tenant_id,
                        "rfq_type": candidate.rfq_type.value,
                        "race_opens_at": candidate.race_opens_at.isoformat(),
                        "broadcasts": added,
                    },
                )
                self.event_bus.publish(
                    RaceCreated(
                        tenant_id=repos.tenant_id,
                        rfq_id=candidate.id,
                        occurred_at=now,
                        rfq_type=candidate.rfq_type.value,
                        race_opens_at=candidate.race_opens_at,
                        broadcasts=added,
                    )
                )
                return RaceCreation(
                    rfq=candidate,
                    race_opens_at=candidate.race_opens_at,
                    created=True,
                    broadcasts_added=added,
                    plan=plan,
                    broadcasts=repos.broadcasts.list_for_rfq(db, candidate.id),
                )
            existing = self._load(db, repos, rfq.id)

        return self._resume_race(db, repos, existing, rfq, eligible, now)

    def _resume_race(
        self,
        db,
        repos: RaceRepositories,
        existing: Rfq,
        requested: Rfq,
        suppliers: List[EligibleSupplier],
        now: datetime,
    ) -> RaceCreation:
        if existing.buyer_id != requested.buyer_id or existing.rfq_type is not requested.rfq_type:
            raise RfqIdConflictError(
                details=f"rfq {existing.id} already exists for another buyer or type",
                payload={"rfq_id": existing.id},
            )

        added = 0
        if not existing.status.is_terminal and not repos.broadcasts.any_delivered(db, existing.id):
            plan = self.scheduler.plan(existing.urgency, suppliers, now)
            late = [
                replace(broadcast, scheduled_at=max(broadcast.scheduled_at, existing.race_opens_at))
                for broadcast in plan.broadcasts(existing.id)
            ]
            try:
                added = repos.broadcasts.insert_missing(db, late, now=now)
                db.commit()
            except Exception:
                db.rollback()
                raise
        if added:
            logger.info("race_broadcasts_added", extra={"rfq_id": existing.id, "broadcasts": added})
        return RaceCreation(
            rfq=existing,
            race_opens_at=existing.race_opens_at,
            created=False,
            broadcasts_added=added,
            broadcasts=repos.broadcasts.list_for_rfq(db, existing.id),
        )

    def submit_response(
        self,
        db,
        *,
        tenant_id: str,
        rfq_id: str,
        supplier_id: str,
        response_type: Any,
        quoted_price: Any = None,
        message: str | None = None,
    ) -> Outcome:
        submission = ResponseSubmission.build(
            rfq_id=rfq_id,
            supplier_id=supplier_id,
            response_type=response_type,
            quoted_price=quoted_price,
            message=message,
        )
        arbitrator = ResponseArbitrator(RaceRepositories.for_tenant(tenant_id), clock=self.clock)
        result = arbitrator.arbitrate(db, submission)
        self._after_commit(result.transitions, result.occurred_at)
        return result.outcome

    def confirm_hold(self, db, *, tenant_id: str, rfq_id: str, expected_holder_id: str | None = None) -> Rfq:
        return self._buyer_transition(
            db,
            tenant_id,
            rfq_id,
            "confirm_hold",
            lambda current: BuyerConfirmsHold(expected_holder_id=expected_holder_id),
        )

    def release_hold(self, db, *, tenant_id: str, rfq_id: str) -> Rfq:
        return self._buyer_transition(db, tenant_id, rfq_id, "release_hold", lambda current: BuyerReleasesHold())

    def select_winner(self, db, *, tenant_id: str, rfq_id: str, supplier_id: str) -> Rfq:
        winner = str(supplier_id or "").strip()
        if not winner:
            raise ValidationError(details="supplier_id is required")
        repos = RaceRepositories.for_tenant(tenant_id)

        def _event(current: Rfq) -> RaceEvent:
            if current.rfq_type is not RfqType.SERVICE or current.status is not RfqStatus.BIDDING:
                return BuyerSelectsWinner(supplier_id=winner)
            latest = repos.responses.latest_for_supplier(db, current.id, winner)
            if latest is None or latest.response_type is not ResponseType.ACCEPT:
                raise SupplierNotAcceptedError(
                    details=f"supplier {winner} has no standing accept on rfq {current.id}",
                    payload={"rfq_id": current.id, "supplier_id": winner},
                )
            return BuyerSelectsWinner(supplier_id=winner)

        return self._buyer_transition(db, tenant_id, rfq_id, "select_winner", _event)

    def cancel(self, db, *, tenant_id: str, rfq_id: str) -> Rfq:
        return self._buyer_transition(db, tenant_id, rfq_id, "cancel", lambda current: BuyerCancels())

    def close(self, db, *, tenant_id: str, rfq_id: str) -> Rfq:
        return self._buyer_transition(db, tenant_id, rfq_id, "close", lambda current: BuyerCloses())

    def _buyer_transition(
        self,
        db,
        tenant_id: str,
        rfq_id: str,
        operation: str,
        event_for: Callable[[Rfq], RaceEvent],
    ) -> Rfq:
        repos = RaceRepositories.for_tenant(tenant_id)
        attempts = 0
        while True:
            now = self._now()
            try:
                db.begin_write()
                rfq = self._load(db, repos, rfq_id)
                pending = catch_up(rfq, now)
                current = pending[-1].rfq if pending else rfq
                transition = apply(current, event_for(current), now)
                transitions: List[Transition] = [*pending, transition]
                stored = persist_transitions(db, repos, rfq, transitions, now=now)
                db.commit()
            except StorageConflictError:
                db.rollback()
                observe_storage_conflict(operation)
                if attempts >= MAX_CONFLICT_RETRIES:
                    raise
                attempts += 1
                continue
            except Exception:
                db.rollback()
                raise
            break

        logger.info(
            "buyer_action_applied",
            extra={"rfq_id": rfq_id, "tenant_id": repos.tenant_id, "operation": operation, "status": stored.status.value},
        )
        self._after_commit(transitions, now)
        return stored

    def _after_commit(self, transitions: List[Transition], occurred_at: datetime | None) -> None:
        if not transitions:
            return
        record_transitions(transitions)
        for event in events_for_transitions(transitions, occurred_at=occurred_at or self._now()):
            self.event_bus.publish(event)

    def get_race_status(self, db, *, tenant_id: str, rfq_id: str) -> RaceStatus:
        projector = RaceStatusProjector(RaceRepositories.for_tenant(tenant_id), clock=self.clock)
        return projector.project(db, rfq_id)

    def list_broadcasts(self, db, *, tenant_id: str, rfq_id: str) -> List[RfqBroadcast]:
        repos = RaceRepositories.for_tenant(tenant_id)
        self._load(db, repos, rfq_id)
        return repos.broadcasts.list_for_rfq(db, rfq_id)

    def list_status_events(self, db, *, tenant_id: str, rfq_id: str) -> List[dict]:
        repos = RaceRepositories.for_tenant(tenant_id)
        self._load(db, repos, rfq_id)
        return repos.status_events.list_for_entity(db, entity="rfq", entity_id=rfq_id)

    def mark_delivered(self, db, *, tenant_id: str, rfq_id: str, supplier_id: str) -> RfqBroadcast:
        repos = RaceRepositories.for_tenant(tenant_id)
        broadcast = self._broadcast(db, repos, rfq_id, supplier_id)
        if broadcast.delivered_at is not None:
            return broadcast
        now = self._now()
        if broadcast.scheduled_at > now:
            raise BroadcastNotDueError(
                details=f"broadcast for {supplier_id} is scheduled at {broadcast.scheduled_at.isoformat()}",
                payload={"rfq_id": rfq_id, "supplier_id": supplier_id},
            )
        try:
            repos.broadcasts.mark_delivered(db, rfq_id, supplier_id, now=now)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("broadcast_delivered", extra={"rfq_id": rfq_id, "supplier_id": supplier_id})
        return self._broadcast(db, repos, rfq_id, supplier_id)

    def mark_viewed(self, db, *, tenant_id: str, rfq_id: str, supplier_id: str) -> RfqBroadcast:
        repos = RaceRepositories.for_tenant(tenant_id)
        broadcast = self._broadcast(db, repos, rfq_id, supplier_id)
        if broadcast.viewed_at is not None:
            return broadcast
        now = self._now()
        if not broadcast.is_visible_at(now):
            raise BroadcastNotDueError(
                details=f"broadcast for {supplier_id} has not been delivered",
                payload={"rfq_id": rfq_id, "supplier_id": supplier_id},
            )
        try:
            repos.broadcasts.mark_viewed(db, rfq_id, supplier_id, now=now)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return self._broadcast(db, repos, rfq_id, supplier_id)

    def _broadcast(self, db, repos: RaceRepositories, rfq_id: str, supplier_id: str) -> RfqBroadcast:
        self._load(db, repos, rfq_id)
        broadcast = repos.broadcasts.get(db, rfq_id, supplier_id)
        if broadcast is None:
            raise BroadcastNotFoundError(
                details=f"no broadcast for supplier {supplier_id} on rfq {rfq_id}",
                payload={"rfq_id": rfq_id, "supplier_id": supplier_id},
            )
        return broadcast
