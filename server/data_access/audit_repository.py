import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from copilot.services.models import AuditCategory, AuditLogEntry, from_iso, utcnow
from storage.sqlite.database import dict_factory, format_timestamp, get_connection


def ensure_audit_tables() -> None:
    with get_connection() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_audit_logs (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                conversation_id TEXT,
                plan_id TEXT,
                category TEXT NOT NULL,
                action TEXT NOT NULL,
                tool TEXT,
                input_json TEXT,
                output_json TEXT,
                success INTEGER NOT NULL,
                error_message TEXT,
                ip_address TEXT,
                user_agent TEXT,
                duration_ms INTEGER,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_ai_audit_user ON ai_audit_logs(user_id, created_at)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_ai_audit_conversation ON ai_audit_logs(conversation_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_ai_audit_plan ON ai_audit_logs(plan_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_ai_audit_category ON ai_audit_logs(category, created_at)")
        conn.commit()


def _dumps(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    if payload is None:
        return None
    return json.dumps(payload, ensure_ascii=False, default=str)


def _loads(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class AuditRepository:
    """Append-only: there is no update or delete path for audit rows."""

    def __init__(self) -> None:
        ensure_audit_tables()

    def insert(self, entry: AuditLogEntry) -> str:
        entry_id = entry.id or uuid.uuid4().hex
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO ai_audit_logs (
                    id, user_id, conversation_id, plan_id, category, action, tool,
                    input_json, output_json, success, error_message, ip_address,
                    user_agent, duration_ms, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry_id,
                    entry.user_id,
                    entry.conversation_id,
                    entry.plan_id,
                    AuditCategory(entry.category).value,
                    entry.action,
                    entry.tool,
                    _dumps(entry.input_payload),
                    _dumps(entry.output_payload),
                    1 if entry.success else 0,
                    entry.error_message,
                    entry.ip_address,
                    entry.user_agent,
                    entry.duration_ms,
                    format_timestamp(entry.created_at or utcnow()),
                ),
            )
            conn.commit()
        return entry_id

    def query(
        self,
        *,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        categories: Optional[Sequence[AuditCategory]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if conversation_id is not None:
            clauses.append("conversation_id = ?")
            params.append(conversation_id)
        if plan_id is not None:
            clauses.append("plan_id = ?")
            params.append(plan_id)
        if categories:
            clauses.append(f"category IN ({', '.join('?' for _ in categories)})")
            params.extend(AuditCategory(category).value for category in categories)
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(format_timestamp(start))
        if end is not None:
            clauses.append("created_at <= ?")
            params.append(format_timestamp(end))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([int(limit), int(offset)])
        with get_connection() as conn:
            conn.row_factory = dict_factory
            cur = conn.cursor()
            cur.execute(
                f"SELECT * FROM ai_audit_logs {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                params,
            )
            rows = cur.fetchall()
        return [self._from_row(row) for row in rows]

    def count_failed(self, user_id: str, since: datetime) -> int:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT COUNT(*) FROM ai_audit_logs WHERE user_id = ? AND success = 0 AND created_at >= ?",
                (user_id, format_timestamp(since)),
            )
            return int(cur.fetchone()[0])

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> AuditLogEntry:
        return AuditLogEntry(
            id=row["id"],
            user_id=row.get("user_id"),
            conversation_id=row.get("conversation_id"),
            plan_id=row.get("plan_id"),
            category=AuditCategory(row["category"]),
            action=row["action"],
            tool=row.get("tool"),
            input_payload=_loads(row.get("input_json")),
            output_payload=_loads(row.get("output_json")),
            success=bool(row["success"]),
            error_message=row.get("error_message"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            duration_ms=row.get("duration_ms"),
            created_at=from_iso(row.get("created_at")),
        )
