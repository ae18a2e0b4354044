import unittest
from datetime import timedelta
from unittest.mock import patch

from race_engine import create_app
from race_engine.application.race_store import RaceRepositories, persist_transitions
from race_engine.config import Config
from race_engine.domain.models import RfqStatus
from race_engine.domain.state_machine import RaceWindowReached
from race_engine.observability import metrics_snapshot
from race_engine.clock import FrozenClock
from race_engine.sweeper import OPEN_RACE, ExpirySweeper, RaceSweeper, SweepReport, _should_start_sweeper
from tests.helpers.race_case import MONDAY_10AM, TENANT, RaceServiceTestCase, supplier
from tests.helpers.temp_db import TempDbSandbox


class ExpirySweeperTest(RaceServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.sweeper = ExpirySweeper(clock=self.clock, event_bus=self.bus, deliver_broadcasts=True)

    def test_opens_due_races_and_delivers_broadcasts(self) -> None:
        creation = self.create_race("rfq-1", suppliers=[supplier("sup-a"), supplier("sup-b", "approved")])
        self.clock.set(creation.race_opens_at + timedelta(seconds=30))

        report = self.sweeper.sweep(self.db)

        self.assertEqual(report.opened_races, 1)
        self.assertEqual(report.delivered_broadcasts, 2)
        self.assertEqual(report.failed, 0)
        self.assertEqual(self.stored("rfq-1").status, RfqStatus.BIDDING)
        self.assertIn("RaceOpened", self.event_types())

        second = self.sweeper.sweep(self.db)
        self.assertEqual(second.to_dict()["opened_races"], 0)
        self.assertEqual(second.delivered_broadcasts, 0)

        outcome = self.submit("rfq-1", "sup-b")
        self.assertEqual(outcome.kind.value, "awarded")

    def test_broadcasts_not_delivered_before_their_instant(self) -> None:
        creation = self.create_race("rfq-1", suppliers=[supplier("sup-a"), supplier("sup-b", "approved")])
        self.clock.set(creation.race_opens_at)

        report = self.sweeper.sweep(self.db)

        self.assertEqual(report.delivered_broadcasts, 1)
        tallies = self.service.get_race_status(self.db, tenant_id=TENANT, rfq_id="rfq-1").broadcasts
        self.assertEqual(tallies["delivered"], 1)

    def test_expires_lapsed_holds(self) -> None:
        self.open_race(self.create_race("rfq-h", "custom"))
        self.submit("rfq-h", "sup-a")
        self.clock.advance(hours=2, seconds=1)

        report = self.sweeper.sweep(self.db, tenant_id=TENANT)

        self.assertEqual(report.expired_holds, 1)
        rfq = self.stored("rfq-h")
        self.assertEqual(rfq.status, RfqStatus.BIDDING)
        self.assertIsNone(rfq.priority_holder_id)
        self.assertEqual(self.event_types()[-1], "PriorityHoldReleased")

    def test_unexpired_hold_is_left_alone(self) -> None:
        self.open_race(self.create_race("rfq-h", "custom"))
        self.submit("rfq-h", "sup-a")
        self.clock.advance(hours=1, minutes=59)

        report = self.sweeper.sweep(self.db, tenant_id=TENANT)

        self.assertEqual(report.expired_holds, 0)
        self.assertEqual(report.skipped, 0)
        rfq = self.stored("rfq-h")
        self.assertEqual(rfq.status, RfqStatus.PRIORITY_HOLD)
        self.assertEqual(rfq.priority_holder_id, "sup-a")
        self.assertNotIn("PriorityHoldReleased", self.event_types())

    def test_failing_rfq_does_not_stop_the_pass(self) -> None:
        creation = self.create_race("rfq-bad")
        self.create_race("rfq-good")
        self.clock.set(creation.race_opens_at)

        def _persist(db, repos, rfq, transitions, **kwargs):
            if rfq.id == "rfq-bad":
                raise RuntimeError("disk full")
            return persist_transitions(db, repos, rfq, transitions, **kwargs)

        with patch("race_engine.sweeper.persist_transitions", side_effect=_persist):
            with self.assertLogs("race_engine.sweeper", level="ERROR") as logs:
                report = self.sweeper.sweep(self.db, tenant_id=TENANT)

        self.assertEqual(report.opened_races, 1)
        self.assertEqual(report.failed, 1)
        self.assertEqual(report.failed_rfq_ids, ["rfq-bad"])
        self.assertEqual(self.stored("rfq-good").status, RfqStatus.BIDDING)
        self.assertEqual(self.stored("rfq-bad").status, RfqStatus.OPEN)
        self.assertEqual(logs.records[0].getMessage(), "sweep_rfq_failed")
        self.assertEqual(logs.records[0].rfq_id, "rfq-bad")

    def test_closes_races_past_deadline(self) -> None:
        self.open_race(self.create_race("rfq-d", "service"))
        self.clock.set(self.stored("rfq-d").deadline)

        report = self.sweeper.sweep(self.db)

        # The unpersisted opening happens in the same pass as the close.
        self.assertEqual(report.opened_races, 1)
        self.assertEqual(report.closed_races, 1)
        self.assertEqual(self.stored("rfq-d").status, RfqStatus.CLOSED)
        self.assertEqual(self.events[-1].reason, "deadline_elapsed")

    def test_lost_conditional_write_is_skipped(self) -> None:
        creation = self.create_race("rfq-1")
        stale = self.stored("rfq-1")
        self.clock.set(creation.race_opens_at)
        self.service.cancel(self.db, tenant_id=TENANT, rfq_id="rfq-1")

        report = SweepReport()
        repos = RaceRepositories.for_tenant(TENANT)
        self.sweeper._advance(self.db, repos, stale, RaceWindowReached(), OPEN_RACE, self.clock.now(), report)

        self.assertEqual(report.skipped, 1)
        self.assertEqual(report.opened_races, 0)
        self.assertEqual(self.stored("rfq-1").status, RfqStatus.CANCELLED)
        self.assertEqual(metrics_snapshot()["storage_conflicts"].get(OPEN_RACE), 1)

    def test_snapshot_rejected_by_state_machine_is_stale(self) -> None:
        creation = self.create_race("rfq-1")
        self.clock.set(creation.race_opens_at)
        self.service.cancel(self.db, tenant_id=TENANT, rfq_id="rfq-1")
        cancelled = self.stored("rfq-1")

        report = SweepReport()
        repos = RaceRepositories.for_tenant(TENANT)
        self.sweeper._advance(self.db, repos, cancelled, RaceWindowReached(), OPEN_RACE, self.clock.now(), report)

        self.assertEqual(report.total(OPEN_RACE, "stale"), 1)
        self.assertEqual(report.skipped, 1)
        self.assertNotIn(OPEN_RACE, metrics_snapshot()["storage_conflicts"])

    def test_sweep_metrics(self) -> None:
        creation = self.create_race("rfq-1")
        self.clock.set(creation.race_opens_at)

        self.sweeper.sweep(self.db)

        sweeper = metrics_snapshot()["sweeper"]
        self.assertEqual(sweeper["runs"], 1)
        self.assertEqual(sweeper["actions"]["open_race:ok"], 1)


class SweeperStartupTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="race_sweeper_startup")

    def tearDown(self) -> None:
        self._temp_db.cleanup()

    def test_sweeper_never_starts_under_testing(self) -> None:
        cfg = self._temp_db.make_config(Config, TESTING=True, RACE_SWEEPER_ENABLED=True)
        app = create_app(cfg)

        self.assertFalse(_should_start_sweeper(app))
        self.assertNotIn("race_sweeper", app.extensions)

    def test_sweeper_disabled_by_flag(self) -> None:
        cfg = self._temp_db.make_config(Config, TESTING=False, DB_AUTO_INIT=False, RACE_SWEEPER_ENABLED=False)
        app = create_app(cfg)

        self.assertFalse(_should_start_sweeper(app))

    def test_background_sweeper_lifecycle(self) -> None:
        cfg = self._temp_db.make_config(Config, TESTING=True, RACE_SWEEPER_INTERVAL_SECONDS=0)
        app = create_app(cfg)
        sweeper = RaceSweeper(app, clock=FrozenClock(MONDAY_10AM))

        self.assertEqual(sweeper.interval_seconds, 5)
        self.assertEqual(sweeper.run_once().to_dict()["opened_races"], 0)

        sweeper.start()
        sweeper.stop()
        sweeper._thread.join(timeout=5)
        self.assertFalse(sweeper._thread.is_alive())


if __name__ == "__main__":
    unittest.main()
