import uuid
from typing import Any, Dict, List, Optional

from copilot.services.models import EntityKind, utcnow
from storage.sqlite.database import dict_factory, format_timestamp, get_connection

_TABLES = {
    EntityKind.CLIENT: "clients",
    EntityKind.QUOTE: "quotes",
    EntityKind.WORK_ORDER: "work_orders",
    EntityKind.CLIENT_PAYMENT: "client_payments",
}


def ensure_business_tables() -> None:
    with get_connection() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS clients (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                email TEXT,
                phone TEXT,
                document TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS quotes (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                client_id TEXT NOT NULL,
                title TEXT NOT NULL,
                amount REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'DRAFT',
                created_at TEXT NOT NULL,
                FOREIGN KEY (client_id) REFERENCES clients(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS work_orders (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                client_id TEXT NOT NULL,
                quote_id TEXT,
                description TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'OPEN',
                created_at TEXT NOT NULL,
                FOREIGN KEY (client_id) REFERENCES clients(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS client_payments (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                client_id TEXT NOT NULL,
                billing_type TEXT NOT NULL,
                value REAL NOT NULL,
                due_date TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'PENDING',
                created_at TEXT NOT NULL,
                FOREIGN KEY (client_id) REFERENCES clients(id)
            )
            """
        )
        for table in _TABLES.values():
            cur.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_user ON {table}(user_id)")
        conn.commit()


class BusinessRepository:
    """Tenant-owned business records the copilot tools read and write."""

    def __init__(self) -> None:
        ensure_business_tables()

    # --- Ownership ----------------------------------------------------------------
    def _owned(self, kind: EntityKind, entity_id: str, user_id: str) -> bool:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT 1 FROM {_TABLES[kind]} WHERE id = ? AND user_id = ?",
                (entity_id, user_id),
            )
            return cur.fetchone() is not None

    def client_owned_by(self, client_id: str, user_id: str) -> bool:
        return self._owned(EntityKind.CLIENT, client_id, user_id)

    def quote_owned_by(self, quote_id: str, user_id: str) -> bool:
        return self._owned(EntityKind.QUOTE, quote_id, user_id)

    def work_order_owned_by(self, work_order_id: str, user_id: str) -> bool:
        return self._owned(EntityKind.WORK_ORDER, work_order_id, user_id)

    def client_payment_owned_by(self, payment_id: str, user_id: str) -> bool:
        return self._owned(EntityKind.CLIENT_PAYMENT, payment_id, user_id)

    def count_owned(self, kind: EntityKind, user_id: str) -> int:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT COUNT(*) FROM {_TABLES[EntityKind(kind)]} WHERE user_id = ?", (user_id,))
            return int(cur.fetchone()[0])

    # --- Clients ------------------------------------------------------------------
    def create_client(
        self,
        user_id: str,
        name: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        document: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = {
            "id": uuid.uuid4().hex,
            "user_id": user_id,
            "name": name,
            "email": email,
            "phone": phone,
            "document": document,
            "created_at": format_timestamp(utcnow()),
        }
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO clients (id, user_id, name, email, phone, document, created_at)
                VALUES (:id, :user_id, :name, :email, :phone, :document, :created_at)
                """,
                record,
            )
            conn.commit()
        return record

    def get_client(self, client_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        with get_connection() as conn:
            conn.row_factory = dict_factory
            cur = conn.cursor()
            cur.execute("SELECT * FROM clients WHERE id = ? AND user_id = ?", (client_id, user_id))
            return cur.fetchone()

    def search_clients(self, user_id: str, query: Optional[str] = None, limit: int = 10) -> List[Dict[str, Any]]:
        sql = "SELECT id, name, email, phone, created_at FROM clients WHERE user_id = ?"
        params: List[Any] = [user_id]
        if query:
            sql += " AND (name LIKE ? OR email LIKE ?)"
            pattern = f"%{query}%"
            params.extend([pattern, pattern])
        sql += " ORDER BY name ASC LIMIT ?"
        params.append(int(limit))
        with get_connection() as conn:
            conn.row_factory = dict_factory
            cur = conn.cursor()
            cur.execute(sql, params)
            return cur.fetchall()

    # --- Quotes / work orders -----------------------------------------------------
    def create_quote(self, user_id: str, client_id: str, title: str, amount: float) -> Dict[str, Any]:
        record = {
            "id": uuid.uuid4().hex,
            "user_id": user_id,
            "client_id": client_id,
            "title": title,
            "amount": float(amount),
            "status": "DRAFT",
            "created_at": format_timestamp(utcnow()),
        }
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO quotes (id, user_id, client_id, title, amount, status, created_at)
                VALUES (:id, :user_id, :client_id, :title, :amount, :status, :created_at)
                """,
                record,
            )
            conn.commit()
        return record

    def create_work_order(
        self,
        user_id: str,
        client_id: str,
        description: str,
        *,
        quote_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = {
            "id": uuid.uuid4().hex,
            "user_id": user_id,
            "client_id": client_id,
            "quote_id": quote_id,
            "description": description,
            "status": "OPEN",
            "created_at": format_timestamp(utcnow()),
        }
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO work_orders (id, user_id, client_id, quote_id, description, status, created_at)
                VALUES (:id, :user_id, :client_id, :quote_id, :description, :status, :created_at)
                """,
                record,
            )
            conn.commit()
        return record

    # --- Payments -----------------------------------------------------------------
    def create_client_payment(
        self,
        user_id: str,
        client_id: str,
        *,
        billing_type: str,
        value: float,
        due_date: str,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = {
            "id": uuid.uuid4().hex,
            "user_id": user_id,
            "client_id": client_id,
            "billing_type": billing_type,
            "value": float(value),
            "due_date": due_date,
            "description": description,
            "status": "PENDING",
            "created_at": format_timestamp(utcnow()),
        }
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO client_payments (
                    id, user_id, client_id, billing_type, value, due_date, description, status, created_at
                ) VALUES (
                    :id, :user_id, :client_id, :billing_type, :value, :due_date, :description, :status, :created_at
                )
                """,
                record,
            )
            conn.commit()
        return record
