from __future__ import annotations

from orderflow.infrastructure.repositories.base import BaseRepository


class ProposalRepository(BaseRepository):
    def insert(
        self,
        db,
        *,
        order_id: int,
        author_role: str,
        actor_role: str,
        actor_name: str | None,
        min_order_value: float | None,
        valid_until: str | None,
        delivery_lead_days: int | None,
        note: str | None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO negotiation_proposals (
                order_id, author_role, actor_role, actor_name, status,
                min_order_value, valid_until, delivery_lead_days, note, tenant_id
            )
            VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                order_id,
                author_role,
                actor_role,
                actor_name,
                min_order_value,
                valid_until,
                delivery_lead_days,
                note,
                self.tenant_id,
            ),
        )
        return self.inserted_id(cursor)

    def insert_line(
        self,
        db,
        *,
        proposal_id: int,
        order_item_id: int,
        quantity: float,
        discount_pct: float,
        bonus_quantity: float,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO negotiation_proposal_items (
                proposal_id, order_item_id, quantity, discount_pct, bonus_quantity, tenant_id
            )
            VALUES (?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (proposal_id, order_item_id, quantity, discount_pct, bonus_quantity, self.tenant_id),
        )
        return self.inserted_id(cursor)

    def get(self, db, proposal_id: int) -> dict | None:
        row = db.execute(
            "SELECT * FROM negotiation_proposals WHERE id = ? AND tenant_id = ? LIMIT 1",
            (proposal_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def list_lines(self, db, proposal_id: int) -> list[dict]:
        rows = db.execute(
            """
            SELECT id, proposal_id, order_item_id, quantity, discount_pct, bonus_quantity
            FROM negotiation_proposal_items
            WHERE proposal_id = ? AND tenant_id = ?
            ORDER BY id
            """,
            (proposal_id, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def list_for_order(self, db, order_id: int) -> list[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM negotiation_proposals
            WHERE order_id = ? AND tenant_id = ?
            ORDER BY created_at DESC, id DESC
            """,
            (order_id, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def list_pending(self, db, order_id: int) -> list[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM negotiation_proposals
            WHERE order_id = ? AND tenant_id = ? AND status = 'pending'
            ORDER BY created_at DESC, id DESC
            """,
            (order_id, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def latest(self, db, order_id: int, *, author_role: str | None = None, status: str | None = None) -> dict | None:
        clauses = ["order_id = ?", "tenant_id = ?"]
        params: list = [order_id, self.tenant_id]
        if author_role:
            clauses.append("author_role = ?")
            params.append(author_role)
        if status:
            clauses.append("status = ?")
            params.append(status)
        row = db.execute(
            f"""
            SELECT *
            FROM negotiation_proposals
            WHERE {" AND ".join(clauses)}
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            params,
        ).fetchone()
        return self.row_to_dict(row)

    def count(self, db, order_id: int, *, author_role: str, status: str) -> int:
        row = db.execute(
            """
            SELECT COUNT(*) AS total
            FROM negotiation_proposals
            WHERE order_id = ? AND tenant_id = ? AND author_role = ? AND status = ?
            """,
            (order_id, self.tenant_id, author_role, status),
        ).fetchone()
        return int(row["total"] if row else 0)

    def set_status(self, db, proposal_id: int, *, new_status: str, expected_status: str) -> bool:
        cursor = db.execute(
            """
            UPDATE negotiation_proposals
            SET status = ?, updated_at = CURRENT_TIMESTAMP,
                resolved_at = CASE WHEN ? = 'pending' THEN NULL ELSE CURRENT_TIMESTAMP END
            WHERE id = ? AND tenant_id = ? AND status = ?
            """,
            (new_status, new_status, proposal_id, self.tenant_id, expected_status),
        )
        return int(cursor.rowcount or 0) == 1
