import contextlib
import sqlite3
from typing import Dict, Iterable, List

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    @contextlib.contextmanager
    def transaction(self):
        """Run the block as one unit: commit on success, rollback on any error."""
        if self.backend == "postgres":
            # Connections run in autocommit mode; open an explicit transaction block.
            self.execute("BEGIN")
        try:
            yield self
        except BaseException:
            if self.backend == "postgres":
                self.execute("ROLLBACK")
            else:
                self.rollback()
            raise
        if self.backend == "postgres":
            self.execute("COMMIT")
        else:
            self.commit()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def _connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 nao instalado.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = _connect_database(db_path)
    return g.db


def get_read_db():
    if "db_read" not in g:
        db_path = current_app.config.get("DATABASE_READ_URL") or current_app.config["DB_PATH"]
        g.db_read = _connect_database(db_path)
    return g.db_read


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()
    db_read = g.pop("db_read", None)
    if db_read is not None:
        db_read.close()


def init_db():
    db = get_db()
    if db.backend == "postgres":
        _init_db_postgres(db)
        return

    _init_db_sqlite(db)


_SQLITE_TYPES: Dict[str, str] = {
    "pk": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "ts": "TEXT",
    "money": "REAL",
}

_POSTGRES_TYPES: Dict[str, str] = {
    "pk": "SERIAL PRIMARY KEY",
    "ts": "TIMESTAMP",
    "money": "NUMERIC(14, 4)",
}


def _schema_statements(types: Dict[str, str]) -> List[str]:
    pk, ts, money = types["pk"], types["ts"], types["money"]
    return [
        f"""
        CREATE TABLE IF NOT EXISTS tenants (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS suppliers (
            id {pk},
            name TEXT NOT NULL,
            phone TEXT,
            email TEXT,
            registered INTEGER NOT NULL DEFAULT 0,
            tenant_id TEXT NOT NULL,
            created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS representatives (
            id {pk},
            name TEXT NOT NULL,
            phone TEXT,
            email TEXT,
            registered INTEGER NOT NULL DEFAULT 0,
            invite_code TEXT,
            tenant_id TEXT NOT NULL,
            created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS purchase_orders (
            id {pk},
            number TEXT,
            supplier_id INTEGER NOT NULL,
            representative_id INTEGER,
            internal_status TEXT NOT NULL DEFAULT 'draft' CHECK (
                internal_status IN (
                    'draft','sent_to_supplier','proposal_pending','counter_proposal_pending',
                    'accepted','finalized','canceled','rejected'
                )
            ),
            external_status INTEGER CHECK (external_status IS NULL OR external_status IN (0, 1, 2, 3)),
            external_order_ref TEXT,
            products_total {money} NOT NULL DEFAULT 0,
            discount {money} NOT NULL DEFAULT 0,
            freight {money} NOT NULL DEFAULT 0,
            total {money} NOT NULL DEFAULT 0,
            min_order_value {money},
            delivery_lead_days INTEGER,
            proposal_valid_until TEXT,
            cancel_reason TEXT,
            version INTEGER NOT NULL DEFAULT 0,
            last_sync_outcome TEXT,
            last_sync_error TEXT,
            external_synced_at {ts},
            tenant_id TEXT NOT NULL,
            created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS purchase_order_items (
            id {pk},
            order_id INTEGER NOT NULL,
            product_id TEXT,
            description TEXT NOT NULL,
            unit_price {money} NOT NULL,
            quantity REAL NOT NULL,
            discount_pct REAL NOT NULL DEFAULT 0,
            effective_unit_price {money},
            bonus_quantity REAL NOT NULL DEFAULT 0,
            items_per_box INTEGER,
            tenant_id TEXT NOT NULL,
            created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS negotiation_proposals (
            id {pk},
            order_id INTEGER NOT NULL,
            author_role TEXT NOT NULL CHECK (author_role IN ('supplier','buyer')),
            actor_role TEXT NOT NULL CHECK (actor_role IN ('buyer','supplier','representative','system')),
            actor_name TEXT,
            status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','accepted','rejected')),
            min_order_value {money},
            valid_until TEXT,
            delivery_lead_days INTEGER,
            note TEXT,
            resolved_at {ts},
            tenant_id TEXT NOT NULL,
            created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS negotiation_proposal_items (
            id {pk},
            proposal_id INTEGER NOT NULL,
            order_item_id INTEGER NOT NULL,
            quantity REAL NOT NULL,
            discount_pct REAL NOT NULL DEFAULT 0,
            bonus_quantity REAL NOT NULL DEFAULT 0,
            tenant_id TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS order_timeline (
            id {pk},
            order_id INTEGER NOT NULL,
            event_type TEXT NOT NULL,
            description TEXT,
            actor_role TEXT NOT NULL CHECK (actor_role IN ('buyer','supplier','representative','system')),
            actor_name TEXT,
            erp_sync_outcome TEXT,
            tenant_id TEXT NOT NULL,
            created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS erp_tokens (
            id {pk},
            tenant_id TEXT NOT NULL UNIQUE,
            access_token TEXT NOT NULL,
            refresh_token TEXT NOT NULL,
            token_type TEXT,
            expires_at TEXT NOT NULL,
            created_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at {ts} NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_purchase_orders_tenant ON purchase_orders (tenant_id, internal_status)",
        "CREATE INDEX IF NOT EXISTS idx_purchase_order_items_order ON purchase_order_items (tenant_id, order_id)",
        "CREATE INDEX IF NOT EXISTS idx_negotiation_proposals_order ON negotiation_proposals (tenant_id, order_id)",
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_negotiation_proposals_pending
        ON negotiation_proposals (order_id)
        WHERE status = 'pending'
        """,
        "CREATE INDEX IF NOT EXISTS idx_negotiation_proposal_items_proposal ON negotiation_proposal_items (proposal_id)",
        "CREATE INDEX IF NOT EXISTS idx_order_timeline_order ON order_timeline (tenant_id, order_id)",
    ]


SCHEMA_TABLES = (
    "order_timeline",
    "negotiation_proposal_items",
    "negotiation_proposals",
    "purchase_order_items",
    "purchase_orders",
    "representatives",
    "suppliers",
    "erp_tokens",
    "tenants",
)


def _init_db_sqlite(db: Database) -> None:
    for statement in _schema_statements(_SQLITE_TYPES):
        db.execute(statement)
    db.commit()


def _init_db_postgres(db: Database) -> None:
    for statement in _schema_statements(_POSTGRES_TYPES):
        db.execute(statement)
    db.commit()
