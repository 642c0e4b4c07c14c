import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from copilot.services.models import (
    ActionType,
    PaymentPreview,
    Plan,
    PlanAction,
    PlanStatus,
    from_iso,
)
from storage.sqlite.database import dict_factory, format_timestamp, get_connection

_TRANSITION_FIELDS = ("confirmed_at", "executed_at", "result_summary", "error_message")


def ensure_plan_tables() -> None:
    with get_connection() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_plans (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                conversation_id TEXT,
                summary TEXT NOT NULL,
                status TEXT NOT NULL,
                idempotency_key TEXT NOT NULL UNIQUE,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                confirmed_at TEXT,
                executed_at TEXT,
                result_summary TEXT,
                error_message TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_plan_actions (
                plan_id TEXT NOT NULL,
                id TEXT NOT NULL,
                position INTEGER NOT NULL,
                tool TEXT NOT NULL,
                params_json TEXT NOT NULL,
                description TEXT,
                action_type TEXT NOT NULL,
                payment_preview_id TEXT,
                PRIMARY KEY (plan_id, id),
                FOREIGN KEY (plan_id) REFERENCES ai_plans(id) ON DELETE CASCADE
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_payment_previews (
                id TEXT PRIMARY KEY,
                plan_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                client_id TEXT NOT NULL,
                client_name TEXT,
                billing_type TEXT NOT NULL,
                value REAL NOT NULL,
                due_date TEXT NOT NULL,
                description TEXT,
                valid INTEGER NOT NULL DEFAULT 1,
                created_payment_id TEXT,
                created_at TEXT,
                FOREIGN KEY (plan_id) REFERENCES ai_plans(id) ON DELETE CASCADE
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_ai_plans_user_status ON ai_plans(user_id, status)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_ai_plans_expiry ON ai_plans(status, expires_at)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_ai_previews_plan ON ai_payment_previews(plan_id)")
        conn.commit()


class PlanRepository:
    """SQLite storage for plans, their ordered actions and payment previews."""

    def __init__(self) -> None:
        ensure_plan_tables()

    def insert(self, plan: Plan) -> bool:
        with get_connection() as conn:
            cur = conn.cursor()
            try:
                cur.execute(
                    """
                    INSERT INTO ai_plans (
                        id, user_id, conversation_id, summary, status, idempotency_key,
                        expires_at, created_at, confirmed_at, executed_at, result_summary, error_message
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        plan.id,
                        plan.user_id,
                        plan.conversation_id,
                        plan.summary,
                        plan.status.value,
                        plan.idempotency_key,
                        format_timestamp(plan.expires_at),
                        format_timestamp(plan.created_at),
                        format_timestamp(plan.confirmed_at),
                        format_timestamp(plan.executed_at),
                        plan.result_summary,
                        plan.error_message,
                    ),
                )
                for position, action in enumerate(plan.actions):
                    preview = action.payment_preview
                    if preview is not None:
                        self._insert_preview(cur, plan.id, plan.user_id, preview)
                    cur.execute(
                        """
                        INSERT INTO ai_plan_actions (
                            plan_id, id, position, tool, params_json, description, action_type, payment_preview_id
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            plan.id,
                            action.id,
                            position,
                            action.tool,
                            json.dumps(action.params, ensure_ascii=False, default=str),
                            action.description,
                            action.action_type.value,
                            preview.id if preview is not None else None,
                        ),
                    )
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                if self.find_by_idempotency_key(plan.idempotency_key) is not None:
                    return False
                raise
        return True

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Plan]:
        with get_connection() as conn:
            conn.row_factory = dict_factory
            cur = conn.cursor()
            cur.execute("SELECT * FROM ai_plans WHERE idempotency_key = ?", (idempotency_key,))
            row = cur.fetchone()
            return self._hydrate(cur, row) if row else None

    def get(self, plan_id: str, user_id: str, status: Optional[PlanStatus] = None) -> Optional[Plan]:
        query = "SELECT * FROM ai_plans WHERE id = ? AND user_id = ?"
        params: List[Any] = [plan_id, user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(PlanStatus(status).value)
        with get_connection() as conn:
            conn.row_factory = dict_factory
            cur = conn.cursor()
            cur.execute(query, params)
            row = cur.fetchone()
            return self._hydrate(cur, row) if row else None

    def transition(
        self,
        plan_id: str,
        user_id: str,
        from_status: PlanStatus,
        to_status: PlanStatus,
        **fields: Any,
    ) -> bool:
        unknown = set(fields) - set(_TRANSITION_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported plan fields: {sorted(unknown)}")

        assignments = ["status = ?"]
        values: List[Any] = [PlanStatus(to_status).value]
        for name in _TRANSITION_FIELDS:
            if name not in fields:
                continue
            value = fields[name]
            assignments.append(f"{name} = ?")
            values.append(format_timestamp(value) if isinstance(value, datetime) else value)
        values.extend([plan_id, user_id, PlanStatus(from_status).value])

        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                f"UPDATE ai_plans SET {', '.join(assignments)} WHERE id = ? AND user_id = ? AND status = ?",
                values,
            )
            conn.commit()
            return cur.rowcount == 1

    def list_pending(self, user_id: str, now: datetime) -> List[Plan]:
        with get_connection() as conn:
            conn.row_factory = dict_factory
            cur = conn.cursor()
            cur.execute(
                """
                SELECT * FROM ai_plans
                WHERE user_id = ? AND status = ? AND expires_at > ?
                ORDER BY created_at DESC
                """,
                (user_id, PlanStatus.PENDING_CONFIRMATION.value, format_timestamp(now)),
            )
            rows = cur.fetchall()
            return [self._hydrate(cur, row) for row in rows]

    def expire_pending(self, now: datetime) -> int:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "UPDATE ai_plans SET status = ? WHERE status = ? AND expires_at < ?",
                (PlanStatus.EXPIRED.value, PlanStatus.PENDING_CONFIRMATION.value, format_timestamp(now)),
            )
            conn.commit()
            return cur.rowcount

    def list_previews(self, plan_id: str, user_id: str) -> List[PaymentPreview]:
        with get_connection() as conn:
            conn.row_factory = dict_factory
            cur = conn.cursor()
            cur.execute(
                "SELECT * FROM ai_payment_previews WHERE plan_id = ? AND user_id = ? ORDER BY created_at ASC",
                (plan_id, user_id),
            )
            return [self._preview_from_row(row) for row in cur.fetchall()]

    def add_preview(self, plan_id: str, preview: PaymentPreview) -> PaymentPreview:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT user_id FROM ai_plans WHERE id = ?", (plan_id,))
            row = cur.fetchone()
            if row is None:
                raise LookupError(f"Plan {plan_id} does not exist")
            self._insert_preview(cur, plan_id, row[0], preview)
            conn.commit()
        return preview

    def invalidate_preview(self, preview_id: str) -> None:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute("UPDATE ai_payment_previews SET valid = 0 WHERE id = ?", (preview_id,))
            conn.commit()

    def consume_preview(self, preview_id: str, payment_id: str) -> bool:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE ai_payment_previews
                SET created_payment_id = ?, valid = 0
                WHERE id = ? AND created_payment_id IS NULL
                """,
                (payment_id, preview_id),
            )
            conn.commit()
            return cur.rowcount == 1

    @staticmethod
    def _insert_preview(cur, plan_id: str, user_id: str, preview: PaymentPreview) -> None:
        cur.execute(
            """
            INSERT INTO ai_payment_previews (
                id, plan_id, user_id, client_id, client_name, billing_type, value,
                due_date, description, valid, created_payment_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                preview.id,
                plan_id,
                user_id,
                preview.client_id,
                preview.client_name,
                preview.billing_type,
                preview.value,
                preview.due_date,
                preview.description,
                1 if preview.valid else 0,
                preview.created_payment_id,
                format_timestamp(preview.created_at),
            ),
        )

    @staticmethod
    def _preview_from_row(row: Dict[str, Any]) -> PaymentPreview:
        return PaymentPreview(
            id=row["id"],
            plan_id=row["plan_id"],
            client_id=row["client_id"],
            client_name=row.get("client_name"),
            billing_type=row["billing_type"],
            value=float(row["value"]),
            due_date=row["due_date"],
            description=row.get("description"),
            valid=bool(row["valid"]),
            created_payment_id=row.get("created_payment_id"),
            created_at=from_iso(row.get("created_at")),
        )

    def _hydrate(self, cur, row: Dict[str, Any]) -> Plan:
        cur.execute("SELECT * FROM ai_payment_previews WHERE plan_id = ?", (row["id"],))
        previews = [self._preview_from_row(item) for item in cur.fetchall()]
        by_id = {preview.id: preview for preview in previews}

        cur.execute("SELECT * FROM ai_plan_actions WHERE plan_id = ? ORDER BY position ASC", (row["id"],))
        actions = []
        for item in cur.fetchall():
            try:
                params = json.loads(item["params_json"] or "{}")
            except json.JSONDecodeError:
                params = {}
            actions.append(
                PlanAction(
                    id=item["id"],
                    tool=item["tool"],
                    params=params,
                    description=item.get("description") or "",
                    action_type=ActionType(item["action_type"]),
                    payment_preview=by_id.get(item.get("payment_preview_id")),
                )
            )

        return Plan(
            id=row["id"],
            user_id=row["user_id"],
            conversation_id=row.get("conversation_id"),
            summary=row["summary"],
            actions=actions,
            status=PlanStatus(row["status"]),
            idempotency_key=row["idempotency_key"],
            expires_at=from_iso(row["expires_at"]),
            created_at=from_iso(row["created_at"]),
            confirmed_at=from_iso(row.get("confirmed_at")),
            executed_at=from_iso(row.get("executed_at")),
            result_summary=row.get("result_summary"),
            error_message=row.get("error_message"),
            previews=previews,
        )
