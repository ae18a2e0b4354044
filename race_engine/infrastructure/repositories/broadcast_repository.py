from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable

from race_engine.clock import to_iso
from race_engine.domain.models import RfqBroadcast
from race_engine.infrastructure.repositories.base import BaseRepository


class BroadcastRepository(BaseRepository):
    def insert_missing(self, db, broadcasts: Iterable[RfqBroadcast], *, now: datetime) -> int:
        """Insert broadcasts whose (rfq, supplier) pair is not stored yet."""
        inserted = 0
        for broadcast in broadcasts:
            cursor = db.execute(
                """
                INSERT INTO rfq_broadcasts (
                    rfq_id, supplier_id, tier, timezone, scheduled_at, created_at, tenant_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id, rfq_id, supplier_id) DO NOTHING
                RETURNING id
                """,
                (
                    broadcast.rfq_id,
                    broadcast.supplier_id,
                    broadcast.tier.value,
                    broadcast.timezone,
                    to_iso(broadcast.scheduled_at),
                    to_iso(now),
                    self.tenant_id,
                ),
            )
            if cursor.fetchone() is not None:
                inserted += 1
        return inserted

    def list_for_rfq(self, db, rfq_id: str) -> list[RfqBroadcast]:
        rows = db.execute(
            """
            SELECT *
            FROM rfq_broadcasts
            WHERE rfq_id = ? AND tenant_id = ?
            ORDER BY scheduled_at ASC, supplier_id ASC
            """,
            (rfq_id, self.tenant_id),
        ).fetchall()
        return [RfqBroadcast.from_row(row) for row in rows]

    def get(self, db, rfq_id: str, supplier_id: str) -> RfqBroadcast | None:
        row = db.execute(
            """
            SELECT *
            FROM rfq_broadcasts
            WHERE rfq_id = ? AND supplier_id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (rfq_id, supplier_id, self.tenant_id),
        ).fetchone()
        return RfqBroadcast.from_row(row) if row else None

    def any_delivered(self, db, rfq_id: str) -> bool:
        row = db.execute(
            """
            SELECT 1 AS delivered
            FROM rfq_broadcasts
            WHERE rfq_id = ? AND delivered_at IS NOT NULL AND tenant_id = ?
            LIMIT 1
            """,
            (rfq_id, self.tenant_id),
        ).fetchone()
        return row is not None

    def mark_delivered(self, db, rfq_id: str, supplier_id: str, *, now: datetime) -> bool:
        """Stamp delivery once, and never before the scheduled instant."""
        cursor = db.execute(
            """
            UPDATE rfq_broadcasts
            SET delivered_at = ?
            WHERE rfq_id = ? AND supplier_id = ? AND tenant_id = ?
              AND delivered_at IS NULL AND scheduled_at <= ?
            """,
            (to_iso(now), rfq_id, supplier_id, self.tenant_id, to_iso(now)),
        )
        return cursor.rowcount == 1

    def mark_viewed(self, db, rfq_id: str, supplier_id: str, *, now: datetime) -> bool:
        cursor = db.execute(
            """
            UPDATE rfq_broadcasts
            SET viewed_at = ?
            WHERE rfq_id = ? AND supplier_id = ? AND tenant_id = ?
              AND delivered_at IS NOT NULL AND delivered_at <= ? AND viewed_at IS NULL
            """,
            (to_iso(now), rfq_id, supplier_id, self.tenant_id, to_iso(now)),
        )
        return cursor.rowcount == 1

    def list_due(self, db, *, now: datetime, limit: int = 200) -> list[RfqBroadcast]:
        rows = db.execute(
            """
            SELECT *
            FROM rfq_broadcasts
            WHERE delivered_at IS NULL AND scheduled_at <= ? AND tenant_id = ?
            ORDER BY scheduled_at ASC, id ASC
            LIMIT ?
            """,
            (to_iso(now), self.tenant_id, int(limit)),
        ).fetchall()
        return [RfqBroadcast.from_row(row) for row in rows]

    def tallies(self, db, rfq_id: str) -> Dict[str, int]:
        row = db.execute(
            """
            SELECT
                COUNT(*) AS scheduled,
                SUM(CASE WHEN delivered_at IS NOT NULL THEN 1 ELSE 0 END) AS delivered,
                SUM(CASE WHEN viewed_at IS NOT NULL THEN 1 ELSE 0 END) AS viewed
            FROM rfq_broadcasts
            WHERE rfq_id = ? AND tenant_id = ?
            """,
            (rfq_id, self.tenant_id),
        ).fetchone()
        data = dict(row) if row else {}
        return {
            "scheduled": int(data.get("scheduled") or 0),
            "delivered": int(data.get("delivered") or 0),
            "viewed": int(data.get("viewed") or 0),
        }
