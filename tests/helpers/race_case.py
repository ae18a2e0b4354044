from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from race_engine.application.race_service import RaceCreation, RaceService
from race_engine.application.race_store import RaceRepositories
from race_engine.clock import FrozenClock
from race_engine.core.event_bus import DomainEvent, EventBus
from race_engine.db import connect_database, init_db
from race_engine.domain.models import EligibleSupplier, Rfq
from race_engine.observability import reset_metrics_for_tests
from tests.helpers.temp_db import TempDbSandbox


# Monday, inside UTC business hours.
MONDAY_10AM = datetime(2024, 1, 8, 10, 0, tzinfo=timezone.utc)
TENANT = "tenant-a"


def supplier(supplier_id: str, tier: str = "verified_partner", tz: str = "UTC") -> EligibleSupplier:
    return EligibleSupplier.from_payload({"supplier_id": supplier_id, "tier": tier, "timezone": tz})


def build_rfq(rfq_id: str, rfq_type: str = "commodity", *, tenant_id: str = TENANT, **overrides) -> Rfq:
    fields = {
        "rfq_id": rfq_id,
        "tenant_id": tenant_id,
        "buyer_id": "buyer-1",
        "rfq_type": rfq_type,
        "title": f"{rfq_type} order {rfq_id}",
        "specifications": {"description": "steel brackets", "quantity": 500, "unit": "pcs"},
        "deadline": "2024-01-10T00:00:00Z",
    }
    fields.update(overrides)
    return Rfq.new(**fields)


class RaceServiceTestCase(unittest.TestCase):
    """Real sqlite store, frozen clock and a private event bus per test."""

    def setUp(self) -> None:
        reset_metrics_for_tests()
        self.sandbox = TempDbSandbox(prefix="race_service")
        self.db = connect_database(self.sandbox.db_path)
        init_db(self.db)
        self.clock = FrozenClock(MONDAY_10AM)
        self.bus = EventBus()
        self.events: list[DomainEvent] = []
        self.bus.subscribe(DomainEvent, self.events.append)
        self.service = RaceService(clock=self.clock, event_bus=self.bus)

    def tearDown(self) -> None:
        self.db.close()
        self.sandbox.cleanup()
        reset_metrics_for_tests()

    def create_race(self, rfq_id: str, rfq_type: str = "commodity", suppliers=None, **overrides) -> RaceCreation:
        if suppliers is None:
            suppliers = [supplier("sup-a"), supplier("sup-b")]
        return self.service.create_race(
            self.db,
            tenant_id=TENANT,
            rfq=build_rfq(rfq_id, rfq_type, **overrides),
            suppliers=suppliers,
        )

    def open_race(self, creation: RaceCreation) -> None:
        """Move the clock past every scheduled broadcast and deliver them all."""
        last = max(item.scheduled_at for item in creation.broadcasts)
        self.clock.set(last + timedelta(seconds=1))
        for broadcast in creation.broadcasts:
            self.service.mark_delivered(
                self.db,
                tenant_id=TENANT,
                rfq_id=broadcast.rfq_id,
                supplier_id=broadcast.supplier_id,
            )

    def submit(self, rfq_id: str, supplier_id: str, response_type: str = "accept", **kwargs):
        return self.service.submit_response(
            self.db,
            tenant_id=TENANT,
            rfq_id=rfq_id,
            supplier_id=supplier_id,
            response_type=response_type,
            **kwargs,
        )

    def stored(self, rfq_id: str) -> Rfq:
        return RaceRepositories.for_tenant(TENANT).rfqs.get(self.db, rfq_id)

    def event_types(self) -> list[str]:
        return [type(event).__name__ for event in self.events]
