from __future__ import annotations

from datetime import datetime

from race_engine.clock import to_iso
from race_engine.infrastructure.repositories.base import BaseRepository


class StatusEventRepository(BaseRepository):
    def add_event(
        self,
        db,
        *,
        entity: str,
        entity_id: str,
        from_status: str | None,
        to_status: str | None,
        reason: str | None,
        version: int | None,
        occurred_at: datetime,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO status_events (
                entity, entity_id, from_status, to_status, reason, version, occurred_at, tenant_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (entity, entity_id, from_status, to_status, reason, version, to_iso(occurred_at), self.tenant_id),
        )
        return self.returned_id(cursor.fetchone())

    def list_for_entity(self, db, *, entity: str, entity_id: str, limit: int = 120) -> list[dict]:
        rows = db.execute(
            """
            SELECT id, entity, entity_id, from_status, to_status, reason, version, occurred_at, tenant_id
            FROM status_events
            WHERE entity = ? AND entity_id = ? AND tenant_id = ?
            ORDER BY occurred_at ASC, id ASC
            LIMIT ?
            """,
            (entity, entity_id, self.tenant_id, int(limit)),
        ).fetchall()
        return self.rows_to_dicts(rows)
