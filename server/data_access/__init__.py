from .audit_repository import AuditRepository, ensure_audit_tables
from .business_repository import BusinessRepository, ensure_business_tables
from .conversation_repository import (
    ConversationRepository,
    ensure_conversation_tables,
)
from .idempotency_repository import IdempotencyRepository, ensure_idempotency_tables
from .plan_repository import PlanRepository, ensure_plan_tables

__all__ = [
    "AuditRepository",
    "BusinessRepository",
    "ConversationRepository",
    "IdempotencyRepository",
    "PlanRepository",
    "ensure_audit_tables",
    "ensure_business_tables",
    "ensure_conversation_tables",
    "ensure_idempotency_tables",
    "ensure_plan_tables",
]
