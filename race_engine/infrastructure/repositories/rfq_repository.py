from __future__ import annotations

from datetime import datetime

from race_engine.clock import to_iso
from race_engine.domain.models import Rfq, RfqStatus
from race_engine.errors import StorageConflictError
from race_engine.infrastructure.repositories.base import BaseRepository


_LIVE_STATUSES = (RfqStatus.OPEN.value, RfqStatus.BIDDING.value, RfqStatus.PRIORITY_HOLD.value)


class RfqRepository(BaseRepository):
    def insert(self, db, rfq: Rfq, *, now: datetime) -> bool:
        """Insert a new race; returns False when the id is already taken."""
        cursor = db.execute(
            """
            INSERT INTO rfqs (
                id, tenant_id, buyer_id, rfq_type, title, specifications,
                budget_min, budget_max, deadline, category, status, urgency,
                priority_holder_id, priority_hold_expires_at, awarded_to,
                race_opens_at, version, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (tenant_id, id) DO NOTHING
            RETURNING id
            """,
            (
                rfq.id,
                self.tenant_id,
                rfq.buyer_id,
                rfq.rfq_type.value,
                rfq.title,
                rfq.specifications_json,
                rfq.budget_min,
                rfq.budget_max,
                to_iso(rfq.deadline),
                rfq.category,
                rfq.status.value,
                rfq.urgency.value,
                rfq.priority_holder_id,
                to_iso(rfq.priority_hold_expires_at),
                rfq.awarded_to,
                to_iso(rfq.race_opens_at),
                rfq.version,
                to_iso(rfq.created_at or now),
                to_iso(now),
            ),
        )
        return cursor.fetchone() is not None

    def get(self, db, rfq_id: str) -> Rfq | None:
        row = db.execute(
            """
            SELECT *
            FROM rfqs
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (rfq_id, self.tenant_id),
        ).fetchone()
        return Rfq.from_row(row) if row else None

    def compare_and_set(self, db, expected: Rfq, updated: Rfq, *, now: datetime) -> Rfq:
        """Persist ``updated`` only if the row still matches ``expected``.

        Raises ``StorageConflictError`` when another writer got there first.
        """
        cursor = db.execute(
            """
            UPDATE rfqs
            SET status = ?,
                priority_holder_id = ?,
                priority_hold_expires_at = ?,
                awarded_to = ?,
                version = version + 1,
                updated_at = ?
            WHERE id = ? AND tenant_id = ? AND version = ? AND status = ?
            """,
            (
                updated.status.value,
                updated.priority_holder_id,
                to_iso(updated.priority_hold_expires_at),
                updated.awarded_to,
                to_iso(now),
                expected.id,
                self.tenant_id,
                expected.version,
                expected.status.value,
            ),
        )
        if cursor.rowcount != 1:
            raise StorageConflictError(expected.id, expected.version)
        return updated.with_changes(version=expected.version + 1)

    def list_due_for_opening(self, db, *, now: datetime, limit: int = 200) -> list[Rfq]:
        rows = db.execute(
            """
            SELECT *
            FROM rfqs
            WHERE status = ? AND race_opens_at <= ? AND tenant_id = ?
            ORDER BY race_opens_at ASC, id ASC
            LIMIT ?
            """,
            (RfqStatus.OPEN.value, to_iso(now), self.tenant_id, int(limit)),
        ).fetchall()
        return [Rfq.from_row(row) for row in rows]

    def list_expired_holds(self, db, *, now: datetime, limit: int = 200) -> list[Rfq]:
        rows = db.execute(
            """
            SELECT *
            FROM rfqs
            WHERE status = ? AND priority_hold_expires_at <= ? AND tenant_id = ?
            ORDER BY priority_hold_expires_at ASC, id ASC
            LIMIT ?
            """,
            (RfqStatus.PRIORITY_HOLD.value, to_iso(now), self.tenant_id, int(limit)),
        ).fetchall()
        return [Rfq.from_row(row) for row in rows]

    def list_elapsed_deadlines(self, db, *, now: datetime, limit: int = 200) -> list[Rfq]:
        rows = db.execute(
            """
            SELECT *
            FROM rfqs
            WHERE status IN (?, ?) AND deadline IS NOT NULL AND deadline <= ? AND tenant_id = ?
            ORDER BY deadline ASC, id ASC
            LIMIT ?
            """,
            (RfqStatus.OPEN.value, RfqStatus.BIDDING.value, to_iso(now), self.tenant_id, int(limit)),
        ).fetchall()
        return [Rfq.from_row(row) for row in rows]

    @staticmethod
    def active_tenant_ids(db) -> list[str]:
        rows = db.execute(
            """
            SELECT DISTINCT tenant_id
            FROM rfqs
            WHERE status IN (?, ?, ?)
            ORDER BY tenant_id
            """,
            _LIVE_STATUSES,
        ).fetchall()
        return [str(row["tenant_id"]) for row in rows]
