import sqlite3
from typing import Iterable

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


RFQ_STATUSES = ("Open", "Bidding", "priority_hold", "Awarded", "Closed", "cancelled")
RFQ_TYPES = ("commodity", "custom", "service")
RESPONSE_TYPES = ("accept", "info_request", "decline")
SUPPLIER_TIERS = ("verified_partner", "approved", "pending")


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

    def begin_write(self):
        """Take the write lock up front so sqlite writers queue instead of failing at commit."""
        if self.backend == "sqlite" and not self._conn.in_transaction:
            self._conn.execute("BEGIN IMMEDIATE")

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def _in_list(values: Iterable[str]) -> str:
    return ",".join(f"'{value}'" for value in values)


def connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is not installed.")
        conn = psycopg2.connect(db_path)
        return Database("postgres", conn)

    # Concurrent writers on the same file wait for the lock instead of failing.
    conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = connect_database(db_path)
    return g.db


def get_read_db():
    if "db_read" not in g:
        db_path = current_app.config.get("DATABASE_READ_URL") or current_app.config["DB_PATH"]
        g.db_read = connect_database(db_path)
    return g.db_read


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()
    db_read = g.pop("db_read", None)
    if db_read is not None:
        db_read.close()


def init_db(db: Database | None = None):
    db = db or get_db()
    if db.backend == "postgres":
        _init_db_postgres(db)
    else:
        _init_db_sqlite(db)
    db.commit()


def _rfq_table_sql(*, id_type: str, real_type: str) -> str:
    return f"""
        CREATE TABLE IF NOT EXISTS rfqs (
            id {id_type} NOT NULL,
            tenant_id TEXT NOT NULL,
            buyer_id TEXT NOT NULL,
            rfq_type TEXT NOT NULL CHECK (rfq_type IN ({_in_list(RFQ_TYPES)})),
            title TEXT NOT NULL,
            specifications TEXT NOT NULL DEFAULT '{{}}',
            budget_min {real_type},
            budget_max {real_type},
            deadline TEXT,
            category TEXT,
            status TEXT NOT NULL DEFAULT 'Open' CHECK (status IN ({_in_list(RFQ_STATUSES)})),
            urgency TEXT NOT NULL DEFAULT 'standard' CHECK (urgency IN ('urgent','standard')),
            priority_holder_id TEXT,
            priority_hold_expires_at TEXT,
            awarded_to TEXT,
            race_opens_at TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (tenant_id, id),
            CHECK ((status = 'priority_hold') = (priority_holder_id IS NOT NULL)),
            CHECK ((status = 'priority_hold') = (priority_hold_expires_at IS NOT NULL)),
            CHECK ((status = 'Awarded') = (awarded_to IS NOT NULL))
        )
        """


def _init_db_sqlite(db: Database):
    db.execute(_rfq_table_sql(id_type="TEXT", real_type="REAL"))
    db.execute("CREATE INDEX IF NOT EXISTS idx_rfqs_tenant_status ON rfqs (tenant_id, status)")
    db.execute(
        "CREATE INDEX IF NOT EXISTS idx_rfqs_hold_expiry ON rfqs (status, priority_hold_expires_at)"
    )

    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS rfq_responses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            rfq_id TEXT NOT NULL,
            supplier_id TEXT NOT NULL,
            response_type TEXT NOT NULL CHECK (response_type IN ({_in_list(RESPONSE_TYPES)})),
            quoted_price REAL,
            message TEXT,
            outcome TEXT,
            responded_at TEXT NOT NULL,
            tenant_id TEXT NOT NULL,
            FOREIGN KEY (tenant_id, rfq_id) REFERENCES rfqs (tenant_id, id)
        )
        """
    )
    db.execute(
        "CREATE INDEX IF NOT EXISTS idx_rfq_responses_rfq_supplier ON rfq_responses (rfq_id, supplier_id, id)"
    )

    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS rfq_broadcasts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            rfq_id TEXT NOT NULL,
            supplier_id TEXT NOT NULL,
            tier TEXT NOT NULL CHECK (tier IN ({_in_list(SUPPLIER_TIERS)})),
            timezone TEXT NOT NULL DEFAULT 'UTC',
            scheduled_at TEXT NOT NULL,
            delivered_at TEXT,
            viewed_at TEXT,
            created_at TEXT NOT NULL,
            tenant_id TEXT NOT NULL,
            UNIQUE (tenant_id, rfq_id, supplier_id),
            FOREIGN KEY (tenant_id, rfq_id) REFERENCES rfqs (tenant_id, id),
            CHECK (delivered_at IS NULL OR delivered_at >= scheduled_at)
        )
        """
    )
    db.execute(
        "CREATE INDEX IF NOT EXISTS idx_rfq_broadcasts_due ON rfq_broadcasts (delivered_at, scheduled_at)"
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS status_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entity TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            from_status TEXT,
            to_status TEXT,
            reason TEXT,
            version INTEGER,
            occurred_at TEXT NOT NULL,
            tenant_id TEXT NOT NULL
        )
        """
    )
    db.execute(
        "CREATE INDEX IF NOT EXISTS idx_status_events_entity ON status_events (tenant_id, entity, entity_id)"
    )


def _init_db_postgres(db: Database) -> None:
    db.execute(_rfq_table_sql(id_type="TEXT", real_type="DOUBLE PRECISION"))
    db.execute("CREATE INDEX IF NOT EXISTS idx_rfqs_tenant_status ON rfqs (tenant_id, status)")
    db.execute(
        "CREATE INDEX IF NOT EXISTS idx_rfqs_hold_expiry ON rfqs (status, priority_hold_expires_at)"
    )

    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS rfq_responses (
            id SERIAL PRIMARY KEY,
            rfq_id TEXT NOT NULL,
            supplier_id TEXT NOT NULL,
            response_type TEXT NOT NULL CHECK (response_type IN ({_in_list(RESPONSE_TYPES)})),
            quoted_price DOUBLE PRECISION,
            message TEXT,
            outcome TEXT,
            responded_at TEXT NOT NULL,
            tenant_id TEXT NOT NULL,
            FOREIGN KEY (tenant_id, rfq_id) REFERENCES rfqs (tenant_id, id)
        )
        """
    )
    db.execute(
        "CREATE INDEX IF NOT EXISTS idx_rfq_responses_rfq_supplier ON rfq_responses (rfq_id, supplier_id, id)"
    )

    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS rfq_broadcasts (
            id SERIAL PRIMARY KEY,
            rfq_id TEXT NOT NULL,
            supplier_id TEXT NOT NULL,
            tier TEXT NOT NULL CHECK (tier IN ({_in_list(SUPPLIER_TIERS)})),
            timezone TEXT NOT NULL DEFAULT 'UTC',
            scheduled_at TEXT NOT NULL,
            delivered_at TEXT,
            viewed_at TEXT,
            created_at TEXT NOT NULL,
            tenant_id TEXT NOT NULL,
            UNIQUE (tenant_id, rfq_id, supplier_id),
            FOREIGN KEY (tenant_id, rfq_id) REFERENCES rfqs (tenant_id, id),
            CHECK (delivered_at IS NULL OR delivered_at >= scheduled_at)
        )
        """
    )
    db.execute(
        "CREATE INDEX IF NOT EXISTS idx_rfq_broadcasts_due ON rfq_broadcasts (delivered_at, scheduled_at)"
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS status_events (
            id SERIAL PRIMARY KEY,
            entity TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            from_status TEXT,
            to_status TEXT,
            reason TEXT,
            version INTEGER,
            occurred_at TEXT NOT NULL,
            tenant_id TEXT NOT NULL
        )
        """
    )
    db.execute(
        "CREATE INDEX IF NOT EXISTS idx_status_events_entity ON status_events (tenant_id, entity, entity_id)"
    )
