import unittest
from datetime import timedelta

from race_engine.core.event_bus import PriorityHoldGranted, PriorityHoldReleased
from race_engine.domain.contracts import OutcomeKind
from race_engine.domain.models import RfqStatus
from race_engine.errors import RaceErrorKind, TransitionError
from tests.helpers.race_case import TENANT, RaceServiceTestCase


HOLD = timedelta(hours=2)


class PriorityHoldTest(RaceServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.open_race(self.create_race("rfq-h1", "custom"))

    def test_first_accept_takes_the_hold(self) -> None:
        granted_at = self.clock.now()
        first = self.submit("rfq-h1", "sup-a")
        second = self.submit("rfq-h1", "sup-b")

        self.assertEqual(first.kind, OutcomeKind.HOLD_GRANTED)
        self.assertEqual(first.expires_at, granted_at + HOLD)
        self.assertEqual(second.reason, RaceErrorKind.HOLD_ACTIVE)

        rfq = self.stored("rfq-h1")
        self.assertEqual(rfq.status, RfqStatus.PRIORITY_HOLD)
        self.assertEqual(rfq.priority_holder_id, "sup-a")
        self.assertEqual(rfq.priority_hold_expires_at, granted_at + HOLD)

    def test_buyer_confirms_hold(self) -> None:
        self.submit("rfq-h1", "sup-a")
        self.clock.advance(minutes=30)

        rfq = self.service.confirm_hold(self.db, tenant_id=TENANT, rfq_id="rfq-h1", expected_holder_id="sup-a")

        self.assertEqual(rfq.status, RfqStatus.AWARDED)
        self.assertEqual(rfq.awarded_to, "sup-a")
        self.assertIsNone(self.stored("rfq-h1").priority_holder_id)
        self.assertEqual(self.event_types()[-1], "RfqAwarded")

        late = self.submit("rfq-h1", "sup-b")
        self.assertEqual(late.reason, RaceErrorKind.ALREADY_AWARDED)

    def test_buyer_release_reopens_bidding(self) -> None:
        self.submit("rfq-h1", "sup-a")

        rfq = self.service.release_hold(self.db, tenant_id=TENANT, rfq_id="rfq-h1")
        self.assertEqual(rfq.status, RfqStatus.BIDDING)

        released = [event for event in self.events if isinstance(event, PriorityHoldReleased)]
        self.assertEqual(len(released), 1)
        self.assertEqual(released[0].reason, "released")

        second = self.submit("rfq-h1", "sup-b")
        self.assertEqual(second.kind, OutcomeKind.HOLD_GRANTED)

    def test_expired_hold_passes_to_next_accept(self) -> None:
        self.submit("rfq-h1", "sup-a")
        self.clock.advance(HOLD)

        outcome = self.submit("rfq-h1", "sup-b")

        self.assertEqual(outcome.kind, OutcomeKind.HOLD_GRANTED)
        rfq = self.stored("rfq-h1")
        self.assertEqual(rfq.priority_holder_id, "sup-b")
        self.assertEqual(rfq.priority_hold_expires_at, self.clock.now() + HOLD)

        events = self.service.list_status_events(self.db, tenant_id=TENANT, rfq_id="rfq-h1")
        self.assertEqual(
            [event["reason"] for event in events],
            ["race_created", "race_opened", "hold_granted", "hold_expired", "hold_granted"],
        )
        released = [event for event in self.events if isinstance(event, PriorityHoldReleased)]
        self.assertEqual([event.reason for event in released], ["expired"])
        granted = [event.supplier_id for event in self.events if isinstance(event, PriorityHoldGranted)]
        self.assertEqual(granted, ["sup-a", "sup-b"])

    def test_confirming_an_expired_hold_is_invalid(self) -> None:
        self.submit("rfq-h1", "sup-a")
        self.clock.advance(HOLD + timedelta(seconds=1))

        with self.assertRaises(TransitionError) as ctx:
            self.service.confirm_hold(self.db, tenant_id=TENANT, rfq_id="rfq-h1")

        self.assertEqual(ctx.exception.kind, RaceErrorKind.INVALID_STATE)
        self.assertEqual(ctx.exception.http_status, 409)
        self.assertEqual(self.stored("rfq-h1").status, RfqStatus.PRIORITY_HOLD)

    def test_confirm_with_stale_holder_is_invalid(self) -> None:
        self.submit("rfq-h1", "sup-a")

        with self.assertRaises(TransitionError):
            self.service.confirm_hold(self.db, tenant_id=TENANT, rfq_id="rfq-h1", expected_holder_id="sup-b")
        self.assertEqual(self.stored("rfq-h1").status, RfqStatus.PRIORITY_HOLD)

    def test_close_is_refused_during_hold_but_cancel_is_allowed(self) -> None:
        self.submit("rfq-h1", "sup-a")

        with self.assertRaises(TransitionError):
            self.service.close(self.db, tenant_id=TENANT, rfq_id="rfq-h1")
        cancelled = self.service.cancel(self.db, tenant_id=TENANT, rfq_id="rfq-h1")
        self.assertEqual(cancelled.status, RfqStatus.CANCELLED)
        self.assertIsNone(cancelled.priority_holder_id)


if __name__ == "__main__":
    unittest.main()
