import json
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from copilot.services.models import IdempotencyRecord, IdempotencyStatus, from_iso, utcnow
from storage.sqlite.database import dict_factory, format_timestamp, get_connection


def ensure_idempotency_tables() -> None:
    with get_connection() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_idempotency_records (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                idempotency_key TEXT NOT NULL,
                request_hash TEXT NOT NULL,
                response_json TEXT NOT NULL,
                status TEXT NOT NULL,
                entity_ids_json TEXT,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (user_id, tool_name, idempotency_key)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_ai_idempotency_expiry ON ai_idempotency_records(expires_at)"
        )
        conn.commit()


class IdempotencyRepository:
    def __init__(self) -> None:
        ensure_idempotency_tables()

    def find(self, user_id: str, tool_name: str, idempotency_key: str) -> Optional[IdempotencyRecord]:
        with get_connection() as conn:
            conn.row_factory = dict_factory
            cur = conn.cursor()
            cur.execute(
                """
                SELECT * FROM ai_idempotency_records
                WHERE user_id = ? AND tool_name = ? AND idempotency_key = ?
                """,
                (user_id, tool_name, idempotency_key),
            )
            row = cur.fetchone()
        return self._from_row(row) if row else None

    def delete(self, record_id: str) -> None:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM ai_idempotency_records WHERE id = ?", (record_id,))
            conn.commit()

    def upsert(self, record: IdempotencyRecord) -> str:
        record_id = record.id or uuid.uuid4().hex
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO ai_idempotency_records (
                    id, user_id, tool_name, idempotency_key, request_hash, response_json,
                    status, entity_ids_json, expires_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, tool_name, idempotency_key) DO UPDATE SET
                    request_hash = excluded.request_hash,
                    response_json = excluded.response_json,
                    status = excluded.status,
                    entity_ids_json = excluded.entity_ids_json,
                    expires_at = excluded.expires_at
                """,
                (
                    record_id,
                    record.user_id,
                    record.tool_name,
                    record.idempotency_key,
                    record.request_hash,
                    json.dumps(record.response, ensure_ascii=False, default=str),
                    IdempotencyStatus(record.status).value,
                    json.dumps(list(record.entity_ids)),
                    format_timestamp(record.expires_at),
                    format_timestamp(record.created_at or utcnow()),
                ),
            )
            cur.execute(
                """
                SELECT id FROM ai_idempotency_records
                WHERE user_id = ? AND tool_name = ? AND idempotency_key = ?
                """,
                (record.user_id, record.tool_name, record.idempotency_key),
            )
            stored_id = cur.fetchone()[0]
            conn.commit()
        return stored_id

    def delete_expired(self, now: datetime) -> int:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "DELETE FROM ai_idempotency_records WHERE expires_at < ?",
                (format_timestamp(now),),
            )
            conn.commit()
            return cur.rowcount

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> IdempotencyRecord:
        try:
            response = json.loads(row["response_json"] or "{}")
        except json.JSONDecodeError:
            response = {}
        try:
            entity_ids = json.loads(row.get("entity_ids_json") or "[]")
        except json.JSONDecodeError:
            entity_ids = []
        return IdempotencyRecord(
            id=row["id"],
            user_id=row["user_id"],
            tool_name=row["tool_name"],
            idempotency_key=row["idempotency_key"],
            request_hash=row["request_hash"],
            response=response if isinstance(response, dict) else {},
            status=IdempotencyStatus(row["status"]),
            entity_ids=[str(item) for item in entity_ids],
            expires_at=from_iso(row["expires_at"]),
            created_at=from_iso(row.get("created_at")),
        )
