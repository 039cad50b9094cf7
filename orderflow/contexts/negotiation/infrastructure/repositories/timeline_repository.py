from __future__ import annotations

from orderflow.infrastructure.repositories.base import BaseRepository


class TimelineRepository(BaseRepository):
    def add_event(
        self,
        db,
        *,
        order_id: int,
        event_type: str,
        description: str | None,
        actor_role: str,
        actor_name: str | None,
        erp_sync_outcome: str | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO order_timeline (
                order_id, event_type, description, actor_role, actor_name, erp_sync_outcome, tenant_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (order_id, event_type, description, actor_role, actor_name, erp_sync_outcome, self.tenant_id),
        )
        return self.inserted_id(cursor)

    def list_for_order(self, db, order_id: int, *, limit: int = 200) -> list[dict]:
        rows = db.execute(
            """
            SELECT id, order_id, event_type, description, actor_role, actor_name, erp_sync_outcome, created_at
            FROM order_timeline
            WHERE order_id = ? AND tenant_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (order_id, self.tenant_id, int(limit)),
        ).fetchall()
        return self.rows_to_dicts(rows)
