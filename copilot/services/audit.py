"""
Append-only audit trail for tool calls, plan lifecycle events and security denials.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from .models import SECURITY_CATEGORIES, AuditCategory, AuditLogEntry, utcnow
from .ports import AuditStorePort

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

SENSITIVE_KEY_FRAGMENTS = (
    "password",
    "passwd",
    "token",
    "secret",
    "apikey",
    "authorization",
    "card",
    "cvv",
    "cvc",
    "cpf",
    "cnpj",
)

# Too short to match as a fragment without catching words like "company".
SENSITIVE_EXACT_KEYS = frozenset({"pan"})


def _normalize_key(key: Any) -> str:
    return str(key).lower().replace("_", "").replace("-", "").replace(" ", "")


def is_sensitive_key(key: Any) -> bool:
    normalized = _normalize_key(key)
    if normalized in SENSITIVE_EXACT_KEYS:
        return True
    return any(fragment in normalized for fragment in SENSITIVE_KEY_FRAGMENTS)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with every sensitive field replaced, at any depth."""
    if isinstance(value, dict):
        return {
            key: REDACTED if is_sensitive_key(key) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


class AuditService:
    def __init__(self, store: AuditStorePort, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def log(
        self,
        *,
        category: AuditCategory,
        action: str,
        success: bool,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        tool: Optional[str] = None,
        input_payload: Optional[Dict[str, Any]] = None,
        output_payload: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> Optional[str]:
        """
        Persist one redacted audit entry.

        Never raises: an audit write failure is logged locally and the caller's
        operation continues.
        """
        try:
            entry = AuditLogEntry(
                category=category,
                action=action,
                success=success,
                user_id=user_id,
                conversation_id=conversation_id,
                plan_id=plan_id,
                tool=tool,
                input_payload=redact(input_payload) if input_payload is not None else None,
                output_payload=redact(output_payload) if output_payload is not None else None,
                error_message=error_message,
                ip_address=ip_address,
                user_agent=user_agent,
                duration_ms=duration_ms,
                created_at=self._clock(),
            )
            return self._store.insert(entry)
        except Exception:
            logger.exception("Failed to write audit entry %s/%s", getattr(category, "value", category), action)
            return None

    def get_user_logs(
        self,
        user_id: str,
        *,
        category: Optional[AuditCategory] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        categories = [category] if category else None
        return self._store.query(
            user_id=user_id,
            categories=categories,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
        )

    def get_conversation_logs(self, conversation_id: str, *, limit: int = 100) -> List[AuditLogEntry]:
        return self._store.query(conversation_id=conversation_id, limit=limit)

    def get_plan_logs(self, plan_id: str, *, limit: int = 100) -> List[AuditLogEntry]:
        return self._store.query(plan_id=plan_id, limit=limit)

    def get_security_logs(
        self,
        user_id: Optional[str] = None,
        *,
        limit: int = 100,
        categories: Sequence[AuditCategory] = SECURITY_CATEGORIES,
    ) -> List[AuditLogEntry]:
        return self._store.query(user_id=user_id, categories=list(categories), limit=limit)

    def count_failed_operations(self, user_id: str, window_ms: int) -> int:
        since = self._clock() - timedelta(milliseconds=window_ms)
        return self._store.count_failed(user_id, since)
