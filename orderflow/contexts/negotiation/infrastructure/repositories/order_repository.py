from __future__ import annotations

from typing import Any, Dict

from orderflow.errors import ConflictError
from orderflow.infrastructure.repositories.base import BaseRepository


# Columns a status transition may rewrite alongside the status itself.
_TRANSITION_COLUMNS = frozenset(
    {
        "products_total",
        "discount",
        "total",
        "min_order_value",
        "delivery_lead_days",
        "proposal_valid_until",
        "cancel_reason",
    }
)


class PurchaseOrderRepository(BaseRepository):
    def get_by_id(self, db, order_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM purchase_orders
            WHERE id = ? AND tenant_id = ?
            LIMIT 1
            """,
            (order_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def create(
        self,
        db,
        *,
        supplier_id: int,
        number: str | None = None,
        representative_id: int | None = None,
        external_order_ref: str | None = None,
        freight: float = 0.0,
        discount: float = 0.0,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO purchase_orders (
                number, supplier_id, representative_id, external_order_ref, freight, discount, tenant_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (number, supplier_id, representative_id, external_order_ref, freight, discount, self.tenant_id),
        )
        return self.inserted_id(cursor)

    def add_item(
        self,
        db,
        *,
        order_id: int,
        description: str,
        unit_price: float,
        quantity: float,
        product_id: str | None = None,
        items_per_box: int | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO purchase_order_items (
                order_id, product_id, description, unit_price, quantity, items_per_box, tenant_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (order_id, product_id, description, unit_price, quantity, items_per_box, self.tenant_id),
        )
        return self.inserted_id(cursor)

    def list_items(self, db, order_id: int) -> list[dict]:
        rows = db.execute(
            """
            SELECT id, order_id, product_id, description, unit_price, quantity, discount_pct,
                   effective_unit_price, bonus_quantity, items_per_box
            FROM purchase_order_items
            WHERE order_id = ? AND tenant_id = ?
            ORDER BY id
            """,
            (order_id, self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def apply_item_terms(
        self,
        db,
        *,
        item_id: int,
        quantity: float,
        discount_pct: float,
        effective_unit_price: float,
        bonus_quantity: float,
    ) -> None:
        db.execute(
            """
            UPDATE purchase_order_items
            SET quantity = ?, discount_pct = ?, effective_unit_price = ?, bonus_quantity = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND tenant_id = ?
            """,
            (quantity, discount_pct, effective_unit_price, bonus_quantity, item_id, self.tenant_id),
        )

    def transition_status(
        self,
        db,
        order_id: int,
        *,
        expected_status: str,
        expected_version: int,
        new_status: str,
        changes: Dict[str, Any] | None = None,
    ) -> int:
        """Compare-and-swap on (status, version); returns the new version."""
        updates = dict(changes or {})
        unknown = set(updates) - _TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"colunas nao permitidas na transicao: {sorted(unknown)}")

        assignments = ["internal_status = ?", "version = version + 1", "updated_at = CURRENT_TIMESTAMP"]
        params: list[Any] = [new_status]
        for column in sorted(updates):
            assignments.append(f"{column} = ?")
            params.append(updates[column])
        params.extend([order_id, self.tenant_id, expected_status, int(expected_version)])

        cursor = db.execute(
            f"""
            UPDATE purchase_orders
            SET {", ".join(assignments)}
            WHERE id = ? AND tenant_id = ? AND internal_status = ? AND version = ?
            """,
            params,
        )
        if int(cursor.rowcount or 0) != 1:
            raise ConflictError(
                code="order_conflict",
                payload={"order_id": order_id, "expected_status": expected_status, "expected_version": expected_version},
            )
        return int(expected_version) + 1

    def set_totals(self, db, order_id: int, *, products_total: float, total: float) -> None:
        db.execute(
            """
            UPDATE purchase_orders
            SET products_total = ?, total = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND tenant_id = ?
            """,
            (products_total, total, order_id, self.tenant_id),
        )

    def record_sync(
        self,
        db,
        order_id: int,
        *,
        outcome: str,
        error: str | None,
        external_status: int | None,
    ) -> None:
        # external_status only moves after the ERP confirmed the change.
        if external_status is None:
            db.execute(
                """
                UPDATE purchase_orders
                SET last_sync_outcome = ?, last_sync_error = ?
                WHERE id = ? AND tenant_id = ?
                """,
                (outcome, error, order_id, self.tenant_id),
            )
            return
        db.execute(
            """
            UPDATE purchase_orders
            SET last_sync_outcome = ?, last_sync_error = NULL, external_status = ?,
                external_synced_at = CURRENT_TIMESTAMP
            WHERE id = ? AND tenant_id = ?
            """,
            (outcome, int(external_status), order_id, self.tenant_id),
        )


class CounterpartRepository(BaseRepository):
    """Read-only access to the supplier and representative attached to an order."""

    def get_supplier(self, db, supplier_id: int | None) -> dict | None:
        if supplier_id is None:
            return None
        row = db.execute(
            "SELECT id, name, phone, email, registered FROM suppliers WHERE id = ? AND tenant_id = ?",
            (supplier_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def get_representative(self, db, representative_id: int | None) -> dict | None:
        if representative_id is None:
            return None
        row = db.execute(
            """
            SELECT id, name, phone, email, registered, invite_code
            FROM representatives
            WHERE id = ? AND tenant_id = ?
            """,
            (representative_id, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def create_supplier(self, db, *, name: str, phone: str | None = None, registered: bool = False) -> int:
        cursor = db.execute(
            "INSERT INTO suppliers (name, phone, registered, tenant_id) VALUES (?, ?, ?, ?) RETURNING id",
            (name, phone, 1 if registered else 0, self.tenant_id),
        )
        return self.inserted_id(cursor)

    def create_representative(
        self,
        db,
        *,
        name: str,
        phone: str | None = None,
        registered: bool = False,
        invite_code: str | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO representatives (name, phone, registered, invite_code, tenant_id)
            VALUES (?, ?, ?, ?, ?)
            RETURNING id
            """,
            (name, phone, 1 if registered else 0, invite_code, self.tenant_id),
        )
        return self.inserted_id(cursor)
