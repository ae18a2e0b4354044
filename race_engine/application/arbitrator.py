"""Response arbitration.

Decides the outcome of one supplier response against the current RFQ state.
Every accept that changes the RFQ goes through a single versioned update, so
N concurrent accepts on a commodity RFQ produce exactly one ``Awarded``; the
others re-read, see the award and come back ``Rejected(already_awarded)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List

from race_engine.application.race_store import RaceRepositories, persist_transitions
from race_engine.clock import SystemClock, ensure_utc
from race_engine.domain.contracts import Outcome, ResponseSubmission
from race_engine.domain.models import ResponseType, Rfq, RfqStatus, RfqType
from race_engine.domain.state_machine import AcceptReceived, Transition, apply, catch_up
from race_engine.errors import RaceErrorKind, StorageConflictError, TransitionError
from race_engine.observability import observe_arbitration_outcome, observe_storage_conflict


logger = logging.getLogger("race_engine.arbitrator")

# Outcomes that never reach the response log.
_UNRECORDED_REASONS = frozenset(
    {
        RaceErrorKind.RFQ_NOT_FOUND,
        RaceErrorKind.DEADLINE_PASSED,
        RaceErrorKind.NOT_YET_VISIBLE,
        RaceErrorKind.INVALID_STATE,
    }
)

MAX_CONFLICT_RETRIES = 1


@dataclass(frozen=True)
class ArbitrationResult:
    outcome: Outcome
    rfq: Rfq | None = None
    transitions: List[Transition] = field(default_factory=list)
    occurred_at: datetime | None = None


class ResponseArbitrator:
    def __init__(self, repositories: RaceRepositories, clock=None) -> None:
        self.repos = repositories
        self.clock = clock or SystemClock()

    def arbitrate(self, db, submission: ResponseSubmission) -> ArbitrationResult:
        attempts = 0
        while True:
            now = ensure_utc(self.clock.now())
            try:
                db.begin_write()
                result = self._attempt(db, submission, now)
            except StorageConflictError:
                db.rollback()
                observe_storage_conflict("submit_response")
                if attempts >= MAX_CONFLICT_RETRIES:
                    logger.warning(
                        "arbitration_conflict_exhausted",
                        extra={"rfq_id": submission.rfq_id, "supplier_id": submission.supplier_id},
                    )
                    outcome = Outcome.rejected(submission.rfq_id, submission.supplier_id, RaceErrorKind.STORAGE_CONFLICT)
                    result = ArbitrationResult(outcome=self._record(db, submission, outcome, now), occurred_at=now)
                    db.commit()
                    break
                attempts += 1
                continue
            except Exception:
                db.rollback()
                raise
            db.commit()
            break

        rfq_type = result.rfq.rfq_type.value if result.rfq is not None else "unknown"
        observe_arbitration_outcome(rfq_type, result.outcome.label)
        logger.info(
            "response_arbitrated",
            extra={
                "rfq_id": submission.rfq_id,
                "supplier_id": submission.supplier_id,
                "response_type": submission.response_type.value,
                "outcome": result.outcome.label,
                "conflict_retries": attempts,
            },
        )
        return result

    def _attempt(self, db, submission: ResponseSubmission, now: datetime) -> ArbitrationResult:
        rfq_id, supplier_id = submission.rfq_id, submission.supplier_id
        rfq = self.repos.rfqs.get(db, rfq_id)
        if rfq is None:
            return ArbitrationResult(Outcome.rejected(rfq_id, supplier_id, RaceErrorKind.RFQ_NOT_FOUND), occurred_at=now)

        if rfq.deadline is not None and now >= rfq.deadline:
            return self._finish(db, submission, rfq, Outcome.rejected(rfq_id, supplier_id, RaceErrorKind.DEADLINE_PASSED), now)

        broadcast = self.repos.broadcasts.get(db, rfq_id, supplier_id)
        if broadcast is None or not broadcast.is_visible_at(now):
            return self._finish(db, submission, rfq, Outcome.rejected(rfq_id, supplier_id, RaceErrorKind.NOT_YET_VISIBLE), now)

        if submission.response_type is not ResponseType.ACCEPT:
            return self._finish(db, submission, rfq, Outcome.recorded(rfq_id, supplier_id), now)

        pending = catch_up(rfq, now)
        current = pending[-1].rfq if pending else rfq

        if current.rfq_type is RfqType.SERVICE and current.status is RfqStatus.BIDDING:
            return self._finish(db, submission, rfq, Outcome.recorded(rfq_id, supplier_id), now)

        try:
            transition = apply(current, AcceptReceived(supplier_id=supplier_id), now)
        except TransitionError as exc:
            return self._finish(db, submission, rfq, Outcome.rejected(rfq_id, supplier_id, exc.kind), now)

        transitions = [*pending, transition]
        stored = persist_transitions(db, self.repos, rfq, transitions, now=now)
        if stored.status is RfqStatus.AWARDED:
            outcome = Outcome.awarded(rfq_id, supplier_id)
        else:
            outcome = Outcome.hold_granted(rfq_id, supplier_id, stored.priority_hold_expires_at)
        outcome = self._record(db, submission, outcome, now)
        return ArbitrationResult(outcome=outcome, rfq=stored, transitions=transitions, occurred_at=now)

    def _finish(self, db, submission: ResponseSubmission, rfq: Rfq, outcome: Outcome, now: datetime) -> ArbitrationResult:
        return ArbitrationResult(outcome=self._record(db, submission, outcome, now), rfq=rfq, occurred_at=now)

    def _record(self, db, submission: ResponseSubmission, outcome: Outcome, now: datetime) -> Outcome:
        if outcome.reason in _UNRECORDED_REASONS:
            return outcome
        response_id = self.repos.responses.add(
            db,
            rfq_id=submission.rfq_id,
            supplier_id=submission.supplier_id,
            response_type=submission.response_type,
            quoted_price=submission.quoted_price,
            message=submission.message,
            outcome=outcome.label,
            responded_at=now,
        )
        return outcome.with_response_id(response_id)
