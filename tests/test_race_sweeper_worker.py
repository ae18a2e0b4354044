import unittest

from race_engine import create_app
from race_engine.clock import FrozenClock
from race_engine.config import Config
from race_engine.core.event_bus import reset_event_bus_for_tests
from race_engine.observability import reset_metrics_for_tests
from race_engine.sweeper import ExpirySweeper
from race_engine.workers.race_sweeper_worker import _build_parser, _run_once, clamp_interval_seconds
from tests.helpers.race_case import MONDAY_10AM
from tests.helpers.temp_db import TempDbSandbox


class RaceSweeperWorkerTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_event_bus_for_tests()
        reset_metrics_for_tests()
        self._temp_db = TempDbSandbox(prefix="race_worker")
        self.clock = FrozenClock(MONDAY_10AM)
        cfg = self._temp_db.make_config(Config, TESTING=True, RACE_CLOCK=self.clock)
        self.app = create_app(cfg)

    def tearDown(self) -> None:
        self._temp_db.cleanup()
        reset_event_bus_for_tests()
        reset_metrics_for_tests()

    def test_parser_defaults(self) -> None:
        args = _build_parser().parse_args(["--once", "--tenant-id", "tenant-w"])

        self.assertTrue(args.once)
        self.assertEqual(args.tenant_id, "tenant-w")
        self.assertEqual(args.limit, 0)
        self.assertFalse(args.deliver_broadcasts)

    def test_interval_uses_sweeper_bounds(self) -> None:
        self.assertEqual(clamp_interval_seconds(1), 5)
        self.assertEqual(clamp_interval_seconds(12), 12)
        self.assertEqual(clamp_interval_seconds(600), 30)
        self.assertEqual(clamp_interval_seconds(None), 10)

    def test_single_pass_opens_scheduled_race(self) -> None:
        client = self.app.test_client()
        created = client.post(
            "/api/races",
            json={
                "id": "rfq-w1",
                "buyer_id": "buyer-1",
                "rfq_type": "commodity",
                "title": "Pallets",
                "specifications": {"description": "Wooden pallets", "quantity": 40},
                "deadline": "2024-01-10T00:00:00Z",
                "suppliers": [{"supplier_id": "sup-a", "tier": "verified_partner"}],
            },
            headers={"X-Tenant-Id": "tenant-w"},
        )
        self.assertEqual(created.status_code, 201, created.get_json())

        self.clock.advance(minutes=6)
        sweeper = ExpirySweeper(clock=self.clock, event_bus=self.app.extensions["event_bus"], deliver_broadcasts=True)
        report = _run_once(self.app, sweeper, "tenant-w")

        self.assertEqual(report.opened_races, 1)
        self.assertEqual(report.delivered_broadcasts, 1)
        status = client.get("/api/races/rfq-w1/status", headers={"X-Tenant-Id": "tenant-w"}).get_json()
        self.assertEqual(status["status"], "Bidding")


if __name__ == "__main__":
    unittest.main()
