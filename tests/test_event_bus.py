import unittest
from datetime import datetime, timezone

from race_engine.core import (
    DomainEvent,
    EventBus,
    PriorityHoldGranted,
    RaceOpened,
    RfqAwarded,
    get_event_bus,
    reset_event_bus_for_tests,
)
from race_engine.observability import metrics_snapshot, reset_metrics_for_tests


class EventBusTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()

    def tearDown(self) -> None:
        reset_metrics_for_tests()

    def test_handler_execution_order_is_predictable(self) -> None:
        bus = EventBus()
        execution_trace = []

        bus.subscribe(RfqAwarded, lambda _event: execution_trace.append("first"))
        bus.subscribe(RfqAwarded, lambda _event: execution_trace.append("second"))
        bus.subscribe(DomainEvent, lambda _event: execution_trace.append("catch-all"))
        bus.publish(RfqAwarded(tenant_id="tenant-a", rfq_id="rfq-1", supplier_id="sup-a"))

        self.assertEqual(execution_trace, ["first", "second", "catch-all"])

    def test_subscribing_twice_delivers_once(self) -> None:
        bus = EventBus()
        received = []
        bus.subscribe(RaceOpened, received.append)
        bus.subscribe(RaceOpened, received.append)

        bus.publish(RaceOpened(tenant_id="tenant-a", rfq_id="rfq-1"))

        self.assertEqual(len(received), 1)

    def test_failing_handler_does_not_stop_the_others(self) -> None:
        bus = EventBus()
        received = []

        def _boom(_event):
            raise RuntimeError("handler down")

        bus.subscribe(RaceOpened, _boom)
        bus.subscribe(RaceOpened, received.append)

        with self.assertLogs("race_engine", level="ERROR") as logs:
            bus.publish(RaceOpened(tenant_id="tenant-a", rfq_id="rfq-1"))

        self.assertEqual(len(received), 1)
        self.assertIn("event_handler_failed", logs.output[0])

    def test_payload_serializes_timestamps_as_utc(self) -> None:
        expires = datetime(2024, 1, 8, 12, 0, tzinfo=timezone.utc)
        event = PriorityHoldGranted(
            tenant_id=" ",
            rfq_id="rfq-1",
            supplier_id="sup-a",
            expires_at=expires,
            occurred_at=datetime(2024, 1, 8, 10, 0),
        )

        payload = event.to_payload()

        self.assertEqual(payload["event_type"], "PriorityHoldGranted")
        self.assertEqual(payload["tenant_id"], "unknown")
        self.assertEqual(payload["expires_at"], "2024-01-08T12:00:00Z")
        self.assertEqual(payload["occurred_at"], "2024-01-08T10:00:00Z")
        self.assertTrue(payload["event_id"])

    def test_publish_counts_emitted_events(self) -> None:
        bus = EventBus()
        bus.publish(RaceOpened(tenant_id="tenant-a", rfq_id="rfq-1"))
        bus.publish(RaceOpened(tenant_id="tenant-a", rfq_id="rfq-2"))

        self.assertEqual(metrics_snapshot()["domain_events"]["by_type"], {"RaceOpened": 2})

    def test_reset_clears_default_bus(self) -> None:
        received = []
        get_event_bus().subscribe(RaceOpened, received.append)
        reset_event_bus_for_tests()

        get_event_bus().publish(RaceOpened(tenant_id="tenant-a", rfq_id="rfq-1"))

        self.assertEqual(received, [])


if __name__ == "__main__":
    unittest.main()
