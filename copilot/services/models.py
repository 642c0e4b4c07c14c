"""
Shared data models for the copilot orchestration layer.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

PLAN_EXPIRY_MINUTES = 5
IDEMPOTENCY_TTL_HOURS = 24


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def plan_expiry_from(moment: datetime) -> datetime:
    return moment + timedelta(minutes=PLAN_EXPIRY_MINUTES)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ActionType(str, Enum):
    READ = "READ"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    SEND = "SEND"
    PAYMENT_CREATE = "PAYMENT_CREATE"
    PAYMENT_SEND = "PAYMENT_SEND"


class PlanStatus(str, Enum):
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    CONFIRMED = "CONFIRMED"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


TERMINAL_PLAN_STATUSES = frozenset(
    {PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.REJECTED, PlanStatus.EXPIRED}
)


class AuditCategory(str, Enum):
    TOOL_CALL = "TOOL_CALL"
    SECURITY_BLOCK = "SECURITY_BLOCK"
    RATE_LIMIT = "RATE_LIMIT"
    PLAN_CREATED = "PLAN_CREATED"
    PLAN_CONFIRMED = "PLAN_CONFIRMED"
    PLAN_REJECTED = "PLAN_REJECTED"
    PLAN_EXECUTED = "PLAN_EXECUTED"
    ACTION_SUCCESS = "ACTION_SUCCESS"
    ACTION_FAILED = "ACTION_FAILED"


SECURITY_CATEGORIES = (AuditCategory.SECURITY_BLOCK, AuditCategory.RATE_LIMIT)


class EntityKind(str, Enum):
    """Tenant-owned business entities a tool may reference."""

    CLIENT = "CLIENT"
    QUOTE = "QUOTE"
    WORK_ORDER = "WORK_ORDER"
    CLIENT_PAYMENT = "CLIENT_PAYMENT"


class IdempotencyStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class PaymentPreview:
    """Dry-run snapshot of a payment; the real gateway is only called on execution."""

    client_id: str
    billing_type: str
    value: float
    due_date: str
    client_name: Optional[str] = None
    description: Optional[str] = None
    id: Optional[str] = None
    plan_id: Optional[str] = None
    valid: bool = True
    created_payment_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = to_iso(self.created_at)
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PaymentPreview":
        return cls(
            client_id=str(payload["client_id"]),
            billing_type=str(payload.get("billing_type") or "BOLETO"),
            value=float(payload.get("value") or 0),
            due_date=str(payload.get("due_date") or ""),
            client_name=payload.get("client_name"),
            description=payload.get("description"),
            id=payload.get("id"),
            plan_id=payload.get("plan_id"),
            valid=bool(payload.get("valid", True)),
            created_payment_id=payload.get("created_payment_id"),
            created_at=from_iso(payload.get("created_at")),
        )


@dataclass
class PlanAction:
    id: str
    tool: str
    params: Dict[str, Any]
    description: str
    action_type: ActionType
    payment_preview: Optional[PaymentPreview] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tool": self.tool,
            "params": dict(self.params),
            "description": self.description,
            "action_type": self.action_type.value,
            "payment_preview": self.payment_preview.to_dict() if self.payment_preview else None,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PlanAction":
        preview = payload.get("payment_preview")
        return cls(
            id=str(payload["id"]),
            tool=str(payload["tool"]),
            params=dict(payload.get("params") or {}),
            description=str(payload.get("description") or ""),
            action_type=ActionType(payload.get("action_type") or ActionType.READ.value),
            payment_preview=PaymentPreview.from_dict(preview) if preview else None,
        )


@dataclass
class Plan:
    id: str
    user_id: str
    conversation_id: Optional[str]
    summary: str
    actions: List[PlanAction]
    status: PlanStatus
    idempotency_key: str
    expires_at: datetime
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    result_summary: Optional[str] = None
    error_message: Optional[str] = None
    previews: List[PaymentPreview] = field(default_factory=list)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    @property
    def has_payment_actions(self) -> bool:
        return any(action.payment_preview is not None for action in self.actions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "summary": self.summary,
            "actions": [action.to_dict() for action in self.actions],
            "status": self.status.value,
            "idempotency_key": self.idempotency_key,
            "expires_at": to_iso(self.expires_at),
            "created_at": to_iso(self.created_at),
            "confirmed_at": to_iso(self.confirmed_at),
            "executed_at": to_iso(self.executed_at),
            "result_summary": self.result_summary,
            "error_message": self.error_message,
            "previews": [preview.to_dict() for preview in self.previews],
            "has_payment_actions": self.has_payment_actions,
        }


@dataclass
class ActionResult:
    action_id: str
    tool: str
    success: bool
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PlanExecutionResult:
    plan_id: str
    status: PlanStatus
    results: List[ActionResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "status": self.status.value,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass
class IdempotencyRecord:
    user_id: str
    tool_name: str
    idempotency_key: str
    request_hash: str
    response: Dict[str, Any]
    status: IdempotencyStatus
    expires_at: datetime
    entity_ids: List[str] = field(default_factory=list)
    id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class AuditLogEntry:
    category: AuditCategory
    action: str
    success: bool
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    plan_id: Optional[str] = None
    tool: Optional[str] = None
    input_payload: Optional[Dict[str, Any]] = None
    output_payload: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    duration_ms: Optional[int] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["category"] = self.category.value
        payload["created_at"] = to_iso(self.created_at)
        return payload
