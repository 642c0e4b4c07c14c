"""
Port definitions for the persistence collaborators of the orchestration layer.

The SQLite repositories in ``server.data_access`` implement these protocols; tests
use in-memory fakes.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .models import (
    AuditCategory,
    AuditLogEntry,
    EntityKind,
    IdempotencyRecord,
    PaymentPreview,
    Plan,
    PlanStatus,
)


class PlanStorePort(Protocol):
    def insert(self, plan: Plan) -> bool:
        """Persist plan, actions and previews atomically. False if the idempotency key is taken."""
        ...

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Plan]: ...

    def get(self, plan_id: str, user_id: str, status: Optional[PlanStatus] = None) -> Optional[Plan]: ...

    def transition(
        self,
        plan_id: str,
        user_id: str,
        from_status: PlanStatus,
        to_status: PlanStatus,
        **fields: Any,
    ) -> bool: ...

    def list_pending(self, user_id: str, now: datetime) -> List[Plan]: ...

    def expire_pending(self, now: datetime) -> int: ...

    def list_previews(self, plan_id: str, user_id: str) -> List[PaymentPreview]: ...

    def add_preview(self, plan_id: str, preview: PaymentPreview) -> PaymentPreview: ...

    def invalidate_preview(self, preview_id: str) -> None: ...

    def consume_preview(self, preview_id: str, payment_id: str) -> bool: ...


class IdempotencyStorePort(Protocol):
    def find(self, user_id: str, tool_name: str, idempotency_key: str) -> Optional[IdempotencyRecord]: ...

    def delete(self, record_id: str) -> None: ...

    def upsert(self, record: IdempotencyRecord) -> str: ...

    def delete_expired(self, now: datetime) -> int: ...


class AuditStorePort(Protocol):
    def insert(self, entry: AuditLogEntry) -> str: ...

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
    ) -> List[AuditLogEntry]: ...

    def count_failed(self, user_id: str, since: datetime) -> int: ...


class ConversationStatePort(Protocol):
    def get_metadata(self, conversation_id: str) -> Optional[Dict[str, Any]]: ...

    def save_metadata(self, conversation_id: str, metadata: Dict[str, Any]) -> None: ...


class OwnershipLookup(Protocol):
    def client_owned_by(self, client_id: str, user_id: str) -> bool: ...

    def quote_owned_by(self, quote_id: str, user_id: str) -> bool: ...

    def work_order_owned_by(self, work_order_id: str, user_id: str) -> bool: ...

    def client_payment_owned_by(self, payment_id: str, user_id: str) -> bool: ...

    def count_owned(self, kind: EntityKind, user_id: str) -> int: ...
