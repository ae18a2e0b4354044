"""Clock-driven race maintenance.

A sweep pass expires lapsed priority holds, opens races whose broadcast window
has been reached, closes races whose deadline elapsed and, when enabled,
stamps due broadcasts as delivered. Several instances may sweep the same
store concurrently: a lost conditional write is counted as skipped.
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List

from flask import Flask

from race_engine.application.race_store import (
    RaceRepositories,
    events_for_transitions,
    persist_transitions,
    record_transitions,
)
from race_engine.clock import SystemClock, ensure_utc
from race_engine.core.event_bus import EventBus, get_event_bus
from race_engine.db import close_db, get_db
from race_engine.domain.constants import (
    SWEEPER_DEFAULT_INTERVAL_SECONDS,
    SWEEPER_MAX_INTERVAL_SECONDS,
    SWEEPER_MIN_INTERVAL_SECONDS,
)
from race_engine.domain.models import Rfq
from race_engine.domain.state_machine import DeadlineElapsed, HoldExpired, RaceEvent, RaceWindowReached, apply
from race_engine.errors import StorageConflictError, TransitionError
from race_engine.infrastructure.repositories import RfqRepository
from race_engine.observability import bind_request_id, observe_storage_conflict, observe_sweeper_run


logger = logging.getLogger("race_engine.sweeper")

EXPIRE_HOLD = "expire_hold"
OPEN_RACE = "open_race"
CLOSE_DEADLINE = "close_deadline"
DELIVER_BROADCAST = "deliver_broadcast"


@dataclass
class SweepReport:
    counts: Counter = field(default_factory=Counter)
    failed_rfq_ids: List[str] = field(default_factory=list)
    duration_ms: float = 0.0

    def add(self, action: str, result: str = "ok", amount: int = 1) -> None:
        self.counts[f"{action}:{result}"] += amount

    def total(self, action: str, result: str = "ok") -> int:
        return int(self.counts.get(f"{action}:{result}", 0))

    @property
    def expired_holds(self) -> int:
        return self.total(EXPIRE_HOLD)

    @property
    def opened_races(self) -> int:
        return self.total(OPEN_RACE)

    @property
    def closed_races(self) -> int:
        return self.total(CLOSE_DEADLINE)

    @property
    def delivered_broadcasts(self) -> int:
        return self.total(DELIVER_BROADCAST)

    @property
    def skipped(self) -> int:
        return sum(value for key, value in self.counts.items() if key.endswith((":skipped", ":stale")))

    @property
    def failed(self) -> int:
        return sum(value for key, value in self.counts.items() if key.endswith(":failed"))

    def to_dict(self) -> Dict[str, object]:
        return {
            "expired_holds": self.expired_holds,
            "opened_races": self.opened_races,
            "closed_races": self.closed_races,
            "delivered_broadcasts": self.delivered_broadcasts,
            "skipped": self.skipped,
            "failed": self.failed,
            "failed_rfq_ids": list(self.failed_rfq_ids),
            "duration_ms": round(self.duration_ms, 2),
        }


class ExpirySweeper:
    def __init__(
        self,
        *,
        clock=None,
        event_bus: EventBus | None = None,
        limit: int = 200,
        deliver_broadcasts: bool = False,
    ) -> None:
        self.clock = clock or SystemClock()
        self.event_bus = event_bus or get_event_bus()
        self.limit = max(1, int(limit))
        self.deliver_broadcasts = bool(deliver_broadcasts)

    def sweep(self, db, *, tenant_id: str | None = None) -> SweepReport:
        started = time.perf_counter()
        report = SweepReport()
        tenant_ids = [tenant_id] if tenant_id else RfqRepository.active_tenant_ids(db)
        for tenant in tenant_ids:
            self.sweep_tenant(db, tenant, report)
        report.duration_ms = (time.perf_counter() - started) * 1000.0
        observe_sweeper_run(dict(report.counts), report.duration_ms)
        return report

    def sweep_tenant(self, db, tenant_id: str, report: SweepReport) -> None:
        repos = RaceRepositories.for_tenant(tenant_id)
        now = ensure_utc(self.clock.now())

        for rfq in repos.rfqs.list_expired_holds(db, now=now, limit=self.limit):
            self._advance(db, repos, rfq, HoldExpired(holder_id=rfq.priority_holder_id), EXPIRE_HOLD, now, report)

        for rfq in repos.rfqs.list_due_for_opening(db, now=now, limit=self.limit):
            self._advance(db, repos, rfq, RaceWindowReached(), OPEN_RACE, now, report)

        for rfq in repos.rfqs.list_elapsed_deadlines(db, now=now, limit=self.limit):
            self._advance(db, repos, rfq, DeadlineElapsed(), CLOSE_DEADLINE, now, report)

        if self.deliver_broadcasts:
            self._deliver_due(db, repos, now, report)

    def _advance(
        self,
        db,
        repos: RaceRepositories,
        rfq: Rfq,
        event: RaceEvent,
        action: str,
        now: datetime,
        report: SweepReport,
    ) -> None:
        try:
            db.begin_write()
            transition = apply(rfq, event, now)
            persist_transitions(db, repos, rfq, [transition], now=now)
            db.commit()
        except StorageConflictError:
            db.rollback()
            observe_storage_conflict(action)
            report.add(action, "skipped")
            return
        except TransitionError:
            # Snapshot no longer admits this fact.
            db.rollback()
            report.add(action, "stale")
            return
        except Exception:  # noqa: BLE001
            db.rollback()
            report.add(action, "failed")
            report.failed_rfq_ids.append(rfq.id)
            logger.exception(
                "sweep_rfq_failed",
                extra={"rfq_id": rfq.id, "tenant_id": repos.tenant_id, "action": action},
            )
            return

        report.add(action)
        record_transitions([transition])
        for domain_event in events_for_transitions([transition], occurred_at=now):
            self.event_bus.publish(domain_event)

    def _deliver_due(self, db, repos: RaceRepositories, now: datetime, report: SweepReport) -> None:
        for broadcast in repos.broadcasts.list_due(db, now=now, limit=self.limit):
            try:
                delivered = repos.broadcasts.mark_delivered(db, broadcast.rfq_id, broadcast.supplier_id, now=now)
                db.commit()
            except Exception:  # noqa: BLE001
                db.rollback()
                report.add(DELIVER_BROADCAST, "failed")
                report.failed_rfq_ids.append(broadcast.rfq_id)
                logger.exception(
                    "sweep_broadcast_failed",
                    extra={"rfq_id": broadcast.rfq_id, "supplier_id": broadcast.supplier_id},
                )
                continue
            report.add(DELIVER_BROADCAST, "ok" if delivered else "skipped")


class RaceSweeper:
    def __init__(self, app: Flask, *, clock=None, event_bus: EventBus | None = None) -> None:
        self.app = app
        self.interval_seconds = clamp_interval_seconds(app.config.get("RACE_SWEEPER_INTERVAL_SECONDS"))
        self.sweeper = ExpirySweeper(
            clock=clock,
            event_bus=event_bus,
            limit=_int_config(app, "RACE_SWEEPER_LIMIT", 200, 1, 5000),
            deliver_broadcasts=bool(app.config.get("RACE_SWEEPER_DELIVER_BROADCASTS", False)),
        )
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run_loop, name="race-sweeper", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("race_sweeper_pass_failed")
            self._stop_event.wait(self.interval_seconds)

    def run_once(self, tenant_id: str | None = None) -> SweepReport:
        with bind_request_id(f"sweeper-{uuid.uuid4().hex[:12]}"):
            with self.app.app_context():
                db = get_db()
                try:
                    report = self.sweeper.sweep(db, tenant_id=tenant_id)
                finally:
                    close_db()
            if report.counts:
                logger.info("race_sweep_completed", extra=report.to_dict())
            return report


def start_race_sweeper(app: Flask) -> RaceSweeper | None:
    if not _should_start_sweeper(app):
        return None
    sweeper = RaceSweeper(app, clock=app.config.get("RACE_CLOCK"), event_bus=app.extensions.get("event_bus"))
    sweeper.start()
    app.extensions["race_sweeper"] = sweeper
    app.logger.info("Race sweeper started: interval=%ss", sweeper.interval_seconds)
    return sweeper


def _should_start_sweeper(app: Flask) -> bool:
    if not app.config.get("RACE_SWEEPER_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def clamp_interval_seconds(value: int | None) -> int:
    seconds = SWEEPER_DEFAULT_INTERVAL_SECONDS if value is None else int(value)
    return max(SWEEPER_MIN_INTERVAL_SECONDS, min(seconds, SWEEPER_MAX_INTERVAL_SECONDS))


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))

