import unittest
from datetime import datetime, timedelta, timezone

from race_engine.application.status_projector import RaceStatusProjector, format_duration
from race_engine.domain.models import RfqStatus
from tests.helpers.race_case import TENANT, RaceServiceTestCase, build_rfq


NOW = datetime(2024, 1, 8, 10, 0, tzinfo=timezone.utc)


class FormatDurationTest(unittest.TestCase):
    def test_compact_units(self) -> None:
        cases = [
            (timedelta(days=1, hours=2, minutes=3), "1d 2h"),
            (timedelta(hours=3, minutes=4, seconds=5), "3h 4m"),
            (timedelta(minutes=5, seconds=6), "5m 6s"),
            (timedelta(seconds=7), "7s"),
            (timedelta(seconds=-3), "0s"),
            (None, "0s"),
            (90, "1m 30s"),
        ]
        for value, expected in cases:
            with self.subTest(value=value):
                self.assertEqual(format_duration(value), expected)


class ProjectionBuildTest(unittest.TestCase):
    def test_scheduled_phase_counts_down_to_opening(self) -> None:
        rfq = build_rfq("rfq-1").with_changes(race_opens_at=NOW + timedelta(minutes=5))

        status = RaceStatusProjector.build(rfq, now=NOW)

        self.assertEqual(status.phase, "scheduled")
        self.assertEqual(status.seconds_until_open, 300)
        self.assertEqual(status.countdown, "5m 0s")
        self.assertEqual(status.broadcasts, {"scheduled": 0, "delivered": 0, "viewed": 0})

    def test_open_phase_once_window_reached_even_if_not_persisted(self) -> None:
        rfq = build_rfq("rfq-1").with_changes(race_opens_at=NOW - timedelta(seconds=1))

        status = RaceStatusProjector.build(rfq, now=NOW)

        self.assertEqual(status.phase, "open")
        self.assertIsNone(status.countdown)
        self.assertEqual(status.status, "Open")

    def test_hold_progress(self) -> None:
        rfq = build_rfq("rfq-1", "custom").with_changes(
            status=RfqStatus.PRIORITY_HOLD,
            priority_holder_id="sup-a",
            priority_hold_expires_at=NOW + timedelta(hours=1),
        )

        status = RaceStatusProjector.build(rfq, now=NOW)

        self.assertEqual(status.phase, "priority_hold")
        self.assertEqual(status.hold_seconds_remaining, 3600)
        self.assertEqual(status.hold_progress_percent, 50.0)
        self.assertEqual(status.countdown, "1h 0m")

    def test_terminal_phase_hides_deadline_countdown(self) -> None:
        rfq = build_rfq("rfq-1").with_changes(status=RfqStatus.AWARDED, awarded_to="sup-a", race_opens_at=NOW)

        payload = RaceStatusProjector.build(rfq, now=NOW, winner_quoted_price=12.5).to_dict()

        self.assertEqual(payload["phase"], "awarded")
        self.assertEqual(payload["awarded_to"], "sup-a")
        self.assertEqual(payload["winner_quoted_price"], 12.5)
        self.assertIsNone(payload["seconds_until_deadline"])
        self.assertEqual(payload["race_opens_at"], "2024-01-08T10:00:00.000000Z")


class ProjectionFromStoreTest(RaceServiceTestCase):
    def test_projection_reads_counts_from_store(self) -> None:
        self.open_race(self.create_race("rfq-p"))
        self.submit("rfq-p", "sup-a", "info_request")
        self.submit("rfq-p", "sup-b", "accept", quoted_price=44)

        status = self.service.get_race_status(self.db, tenant_id=TENANT, rfq_id="rfq-p")

        self.assertEqual(status.phase, "awarded")
        self.assertEqual(status.total_responses, 2)
        self.assertEqual(status.response_counts, {"accept": 1, "info_request": 1, "decline": 0})
        self.assertEqual(status.winner_quoted_price, 44.0)
        self.assertEqual(status.broadcasts["delivered"], 2)


if __name__ == "__main__":
    unittest.main()
