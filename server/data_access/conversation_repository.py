import json
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from copilot.services.models import utcnow
from storage.sqlite.database import dict_factory, format_timestamp, get_connection


def ensure_conversation_tables() -> None:
    with get_connection() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_conversations (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT,
                metadata_json TEXT,
                message_count INTEGER NOT NULL DEFAULT 0,
                last_message_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_conversation_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                metadata_json TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (conversation_id) REFERENCES ai_conversations(id) ON DELETE CASCADE
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_ai_messages_conversation ON ai_conversation_messages(conversation_id, created_at)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_ai_conversations_user ON ai_conversations(user_id, updated_at)"
        )
        conn.commit()


def _parse_json(value: Optional[str]) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ConversationRepository:
    """Conversations, their messages and the metadata blob that carries assistant state."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        ensure_conversation_tables()

    def create_conversation(self, user_id: str, title: Optional[str] = None) -> Dict[str, Any]:
        conversation_id = uuid.uuid4().hex
        now = format_timestamp(self._clock())
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO ai_conversations (id, user_id, title, metadata_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (conversation_id, user_id, title, json.dumps({}), now, now),
            )
            conn.commit()
        return self.get_conversation(conversation_id, user_id)

    def get_conversation(self, conversation_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        with get_connection() as conn:
            conn.row_factory = dict_factory
            cur = conn.cursor()
            cur.execute(
                """
                SELECT id, user_id, title, metadata_json, message_count, last_message_at, created_at, updated_at
                FROM ai_conversations
                WHERE id = ? AND user_id = ?
                """,
                (conversation_id, user_id),
            )
            record = cur.fetchone()
        if not record:
            return None
        record["metadata"] = _parse_json(record.pop("metadata_json", None))
        return record

    def list_conversations(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        with get_connection() as conn:
            conn.row_factory = dict_factory
            cur = conn.cursor()
            cur.execute(
                """
                SELECT id, user_id, title, message_count, last_message_at, created_at, updated_at
                FROM ai_conversations
                WHERE user_id = ?
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (user_id, int(limit)),
            )
            return cur.fetchall()

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Insert the message and bump the conversation counters in one transaction."""
        now = format_timestamp(self._clock())
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO ai_conversation_messages (conversation_id, role, content, metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    role,
                    str(content),
                    json.dumps(metadata, ensure_ascii=False, default=str) if metadata is not None else None,
                    now,
                ),
            )
            message_id = cur.lastrowid
            cur.execute(
                """
                UPDATE ai_conversations
                SET message_count = message_count + 1, last_message_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (now, now, conversation_id),
            )
            conn.commit()
        return message_id

    def list_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        query = """
            SELECT id, conversation_id, role, content, metadata_json, created_at
            FROM ai_conversation_messages
            WHERE conversation_id = ?
            ORDER BY created_at ASC, id ASC
        """
        params: List[Any] = [conversation_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        with get_connection() as conn:
            conn.row_factory = dict_factory
            cur = conn.cursor()
            cur.execute(query, params)
            rows = cur.fetchall()
        for row in rows:
            row["metadata"] = _parse_json(row.pop("metadata_json", None))
        return rows

    def get_metadata(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT metadata_json FROM ai_conversations WHERE id = ?", (conversation_id,))
            row = cur.fetchone()
        if row is None:
            return None
        return _parse_json(row[0])

    def save_metadata(self, conversation_id: str, metadata: Dict[str, Any]) -> None:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "UPDATE ai_conversations SET metadata_json = ?, updated_at = ? WHERE id = ?",
                (
                    json.dumps(metadata, ensure_ascii=False, default=str),
                    format_timestamp(self._clock()),
                    conversation_id,
                ),
            )
            conn.commit()

    def count_recent_user_messages(self, user_id: str, since: datetime) -> int:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT COUNT(*)
                FROM ai_conversation_messages m
                JOIN ai_conversations c ON c.id = m.conversation_id
                WHERE c.user_id = ? AND m.role = 'user' AND m.created_at >= ?
                """,
                (user_id, format_timestamp(since)),
            )
            return int(cur.fetchone()[0])
