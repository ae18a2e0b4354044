from __future__ import annotations

from datetime import datetime
from typing import Dict

from race_engine.clock import to_iso
from race_engine.domain.models import ResponseType, RfqResponse
from race_engine.infrastructure.repositories.base import BaseRepository


class ResponseRepository(BaseRepository):
    def add(
        self,
        db,
        *,
        rfq_id: str,
        supplier_id: str,
        response_type: ResponseType,
        quoted_price: float | None,
        message: str | None,
        outcome: str | None,
        responded_at: datetime,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO rfq_responses (
                rfq_id, supplier_id, response_type, quoted_price, message, outcome, responded_at, tenant_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                rfq_id,
                supplier_id,
                ResponseType(response_type).value,
                quoted_price,
                message,
                outcome,
                to_iso(responded_at),
                self.tenant_id,
            ),
        )
        return self.returned_id(cursor.fetchone())

    def list_for_rfq(self, db, rfq_id: str) -> list[RfqResponse]:
        rows = db.execute(
            """
            SELECT *
            FROM rfq_responses
            WHERE rfq_id = ? AND tenant_id = ?
            ORDER BY id ASC
            """,
            (rfq_id, self.tenant_id),
        ).fetchall()
        return [RfqResponse.from_row(row) for row in rows]

    def latest_for_supplier(self, db, rfq_id: str, supplier_id: str) -> RfqResponse | None:
        row = db.execute(
            """
            SELECT *
            FROM rfq_responses
            WHERE rfq_id = ? AND supplier_id = ? AND tenant_id = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (rfq_id, supplier_id, self.tenant_id),
        ).fetchone()
        return RfqResponse.from_row(row) if row else None

    def counts_by_type(self, db, rfq_id: str) -> Dict[str, int]:
        counts = {member.value: 0 for member in ResponseType}
        rows = db.execute(
            """
            SELECT response_type, COUNT(*) AS total
            FROM rfq_responses
            WHERE rfq_id = ? AND tenant_id = ?
            GROUP BY response_type
            """,
            (rfq_id, self.tenant_id),
        ).fetchall()
        for row in rows:
            counts[str(row["response_type"])] = int(row["total"] or 0)
        return counts

    def latest_accept_price(self, db, rfq_id: str, supplier_id: str) -> float | None:
        row = db.execute(
            """
            SELECT quoted_price
            FROM rfq_responses
            WHERE rfq_id = ? AND supplier_id = ? AND response_type = ? AND tenant_id = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (rfq_id, supplier_id, ResponseType.ACCEPT.value, self.tenant_id),
        ).fetchone()
        if not row or row["quoted_price"] is None:
            return None
        return float(row["quoted_price"])
