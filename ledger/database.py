"""
SQLite persistence layer for the budget ledger.

A single database file (output/ledger.db) acting as a small document store
with one table per collection:

  transactions       bank-statement transactions (JSON document + key columns)
  purchase_orders    purchase orders (JSON document + key columns)
  sub_organizations  budget-holding units (plain columns)
  audit_log          append-only record of mutations

Documents are stored exactly in their camelCase shape (subOrgId,
debitAmount, poLinks, ...).  Partial updates merge into the stored
document: keys absent from the update are left alone, keys set to None are
removed from the document (used to clear legacy fields).

Every public method runs in its own connection and commits on return,
unless called inside ``with db.atomic():``, in which case all calls on
that thread share one connection and commit (or roll back) together.
"""
import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS transactions (
    id            TEXT PRIMARY KEY,

    -- Key fields (denormalised for fast filtering / sorting)
    post_date     TEXT,
    description   TEXT NOT NULL,
    debit_amount  REAL NOT NULL,
    status        TEXT,

    -- Full Transaction document as JSON
    document      TEXT NOT NULL,

    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transactions_post_date   ON transactions (post_date DESC);
CREATE INDEX IF NOT EXISTS idx_transactions_description ON transactions (description);

CREATE TABLE IF NOT EXISTS purchase_orders (
    id            TEXT PRIMARY KEY,
    name          TEXT,
    status        TEXT NOT NULL,
    creator_id    TEXT,
    total_amount  REAL NOT NULL DEFAULT 0,

    -- Full PurchaseOrder document as JSON
    document      TEXT NOT NULL,

    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_po_status  ON purchase_orders (status);
CREATE INDEX IF NOT EXISTS idx_po_creator ON purchase_orders (creator_id);

CREATE TABLE IF NOT EXISTS sub_organizations (
    id                TEXT PRIMARY KEY,
    name              TEXT NOT NULL UNIQUE,
    budget_allocated  REAL NOT NULL DEFAULT 0,
    budget_spent      REAL NOT NULL DEFAULT 0,   -- written only by reconciliation
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_log (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type  TEXT    NOT NULL,   -- transaction | purchase_order | sub_organization
    entity_id    TEXT    NOT NULL,
    timestamp    TEXT    NOT NULL,   -- ISO-8601 UTC
    action       TEXT    NOT NULL,   -- created | updated | deleted | allocated |
                                     -- linked | status_changed | budget_set | imported
    actor        TEXT    NOT NULL DEFAULT 'system',
    detail       TEXT                -- optional JSON blob with action-specific context
);

CREATE INDEX IF NOT EXISTS idx_audit_entity    ON audit_log (entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log (timestamp DESC);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex[:20]


def _merge(document: dict, partial: dict) -> dict:
    merged = dict(document)
    for key, value in partial.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def _sub_org_row(row: sqlite3.Row) -> dict:
    return {
        "id":              row["id"],
        "name":            row["name"],
        "budgetAllocated": row["budget_allocated"],
        "budgetSpent":     row["budget_spent"],
    }


class Database:
    """Thin wrapper around an SQLite database file holding ledger documents."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_schema()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    @contextmanager
    def _conn(self):
        shared = getattr(self._local, "conn", None)
        if shared is not None:
            yield shared
            return

        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def atomic(self):
        """
        Run every database call made on this thread inside one SQLite
        transaction.  Nested use joins the outer transaction.
        """
        if getattr(self._local, "conn", None) is not None:
            yield
            return

        conn = self._connect()
        self._local.conn = conn
        try:
            yield
            conn.commit()
        except Exception:
            conn.rollback()
            logger.warning("Atomic block rolled back: %s", self.db_path)
            raise
        finally:
            self._local.conn = None
            conn.close()

    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("Database schema ready: %s", self.db_path)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def create_transaction(self, data: dict) -> str:
        """Insert a transaction document and return its id."""
        txn_id = data.get("id") or _new_id()
        now = _now()
        document = _merge(data, {"id": txn_id, "createdAt": now, "updatedAt": now})

        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO transactions (
                    id, post_date, description, debit_amount, status,
                    document, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    txn_id,
                    document.get("postDate"),
                    document.get("description", ""),
                    document.get("debitAmount", 0.0),
                    document.get("status"),
                    json.dumps(document),
                    now,
                    now,
                ),
            )

        logger.info("DB created transaction %s", txn_id)
        return txn_id

    def update_transaction(self, txn_id: str, partial: dict) -> bool:
        """
        Merge *partial* into the stored transaction document.
        Returns True if the record was found.
        """
        with self._conn() as conn:
            row = conn.execute(
                "SELECT document FROM transactions WHERE id=?", (txn_id,)
            ).fetchone()
            if row is None:
                return False

            now = _now()
            document = _merge(json.loads(row["document"]), partial)
            document.update({"id": txn_id, "updatedAt": now})
            conn.execute(
                """
                UPDATE transactions SET
                    post_date    = ?,
                    description  = ?,
                    debit_amount = ?,
                    status       = ?,
                    document     = ?,
                    updated_at   = ?
                WHERE id = ?
                """,
                (
                    document.get("postDate"),
                    document.get("description", ""),
                    document.get("debitAmount", 0.0),
                    document.get("status"),
                    json.dumps(document),
                    now,
                    txn_id,
                ),
            )

        logger.debug("DB updated transaction %s: %s", txn_id, sorted(partial))
        return True

    def delete_transaction(self, txn_id: str) -> bool:
        with self._conn() as conn:
            conn.execute("DELETE FROM transactions WHERE id = ?", (txn_id,))
            return conn.execute("SELECT changes()").fetchone()[0] > 0

    def get_transaction(self, txn_id: str) -> Optional[dict]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT document FROM transactions WHERE id=?", (txn_id,)
            ).fetchone()
        return json.loads(row["document"]) if row else None

    def list_transactions(self) -> list[dict]:
        """Return every transaction document, newest post date first."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT document FROM transactions ORDER BY post_date DESC, created_at DESC"
            ).fetchall()
        return [json.loads(r["document"]) for r in rows]

    def transaction_exists_with_description(self, description: str) -> bool:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT 1 FROM transactions WHERE description = ? LIMIT 1", (description,)
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Sub-organizations
    # ------------------------------------------------------------------

    def create_sub_organization(
        self,
        name: str,
        budget_allocated: float,
        budget_spent: float = 0.0,
        sub_org_id: Optional[str] = None,
    ) -> str:
        sub_org_id = sub_org_id or _new_id()
        now = _now()
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO sub_organizations
                   (id, name, budget_allocated, budget_spent, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (sub_org_id, name, budget_allocated, budget_spent, now, now),
            )
        logger.info("DB created sub-organization %s (%s)", name, sub_org_id)
        return sub_org_id

    def list_sub_organizations(self) -> list[dict]:
        """Return all sub-organizations in catalog (insertion) order."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM sub_organizations ORDER BY rowid"
            ).fetchall()
        return [_sub_org_row(r) for r in rows]

    def get_sub_organization(self, sub_org_id: str) -> Optional[dict]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM sub_organizations WHERE id=?", (sub_org_id,)
            ).fetchone()
        return _sub_org_row(row) if row else None

    def update_sub_org_budget(
        self,
        sub_org_id: str,
        allocated: float,
        spent: Optional[float] = None,
    ) -> bool:
        """
        Set budget_allocated, and budget_spent when given.
        Returns True if the record was found.
        """
        with self._conn() as conn:
            if spent is None:
                conn.execute(
                    """UPDATE sub_organizations
                       SET budget_allocated=?, updated_at=? WHERE id=?""",
                    (allocated, _now(), sub_org_id),
                )
            else:
                conn.execute(
                    """UPDATE sub_organizations
                       SET budget_allocated=?, budget_spent=?, updated_at=? WHERE id=?""",
                    (allocated, spent, _now(), sub_org_id),
                )
            return conn.execute("SELECT changes()").fetchone()[0] > 0

    # ------------------------------------------------------------------
    # Purchase orders
    # ------------------------------------------------------------------

    def create_purchase_order(self, data: dict) -> str:
        po_id = data.get("id") or _new_id()
        now = _now()
        document = _merge(data, {"id": po_id, "createdAt": now, "updatedAt": now})

        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO purchase_orders (
                    id, name, status, creator_id, total_amount,
                    document, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    po_id,
                    document.get("name"),
                    document.get("status", "draft"),
                    document.get("creatorId"),
                    document.get("totalAmount", 0.0),
                    json.dumps(document),
                    now,
                    now,
                ),
            )

        logger.info("DB created purchase order %s", po_id)
        return po_id

    def update_purchase_order(self, po_id: str, partial: dict) -> bool:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT document FROM purchase_orders WHERE id=?", (po_id,)
            ).fetchone()
            if row is None:
                return False

            now = _now()
            document = _merge(json.loads(row["document"]), partial)
            document.update({"id": po_id, "updatedAt": now})
            conn.execute(
                """
                UPDATE purchase_orders SET
                    name         = ?,
                    status       = ?,
                    creator_id   = ?,
                    total_amount = ?,
                    document     = ?,
                    updated_at   = ?
                WHERE id = ?
                """,
                (
                    document.get("name"),
                    document.get("status", "draft"),
                    document.get("creatorId"),
                    document.get("totalAmount", 0.0),
                    json.dumps(document),
                    now,
                    po_id,
                ),
            )

        logger.debug("DB updated purchase order %s: %s", po_id, sorted(partial))
        return True

    def delete_purchase_order(self, po_id: str) -> bool:
        with self._conn() as conn:
            conn.execute("DELETE FROM purchase_orders WHERE id = ?", (po_id,))
            return conn.execute("SELECT changes()").fetchone()[0] > 0

    def get_po_by_id(self, po_id: str) -> Optional[dict]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT document FROM purchase_orders WHERE id=?", (po_id,)
            ).fetchone()
        return json.loads(row["document"]) if row else None

    def list_purchase_orders(
        self,
        status: Optional[str] = None,
        creator_id: Optional[str] = None,
    ) -> list[dict]:
        """Return PO documents newest-first, optionally filtered."""
        clauses: list[str] = []
        params: list = []

        if status:
            clauses.append("status = ?")
            params.append(status)
        if creator_id:
            clauses.append("creator_id = ?")
            params.append(creator_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT document FROM purchase_orders {where} "
                f"ORDER BY created_at DESC, rowid DESC",
                params,
            ).fetchall()
        return [json.loads(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def log_audit(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        actor: str = "system",
        detail: Optional[dict] = None,
    ) -> None:
        """Append one entry to the audit log."""
        with self._conn() as conn:
            conn.execute(
                """INSERT INTO audit_log (entity_type, entity_id, timestamp, action, actor, detail)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    entity_type,
                    entity_id,
                    _now(),
                    action,
                    actor,
                    json.dumps(detail) if detail is not None else None,
                ),
            )

    def get_audit_log(self, entity_type: str, entity_id: str) -> list[dict]:
        """Return all audit entries for one entity, oldest first."""
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT id, entity_type, entity_id, timestamp, action, actor, detail
                   FROM audit_log WHERE entity_type = ? AND entity_id = ?
                   ORDER BY timestamp ASC, id ASC""",
                (entity_type, entity_id),
            ).fetchall()
        return [dict(r) for r in rows]

    def get_recent_audit_log(self, limit: int = 200, offset: int = 0) -> list[dict]:
        """Return recent audit entries across all entities, newest first."""
        with self._conn() as conn:
            rows = conn.execute(
                """SELECT id, entity_type, entity_id, timestamp, action, actor, detail
                   FROM audit_log
                   ORDER BY timestamp DESC, id DESC
                   LIMIT ? OFFSET ?""",
                (limit, offset),
            ).fetchall()
        return [dict(r) for r in rows]
