"""
Tool abstractions used by the copilot orchestrator.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Protocol, Tuple, Union, runtime_checkable

from .models import ActionType, EntityKind
from .ports import OwnershipLookup

logger = logging.getLogger(__name__)

ValidationOutcome = Union[bool, str]

# None means unlimited.
PLAN_ENTITY_LIMITS: Dict[str, Dict[EntityKind, Optional[int]]] = {
    "FREE": {
        EntityKind.CLIENT: 10,
        EntityKind.QUOTE: 10,
        EntityKind.WORK_ORDER: 10,
        EntityKind.CLIENT_PAYMENT: 0,
    },
    "PRO": {
        EntityKind.CLIENT: None,
        EntityKind.QUOTE: None,
        EntityKind.WORK_ORDER: None,
        EntityKind.CLIENT_PAYMENT: None,
    },
}

PLAN_FEATURES: Dict[str, FrozenSet[str]] = {
    "FREE": frozenset({"clients", "quotes", "work_orders"}),
    "PRO": frozenset({"clients", "quotes", "work_orders", "billing"}),
}


@dataclass(frozen=True)
class ToolMetadata:
    name: str
    description: str
    action_type: ActionType
    parameters_schema: Mapping[str, Any] = field(default_factory=dict)
    required_features: Tuple[str, ...] = ()
    requires_payment_preview: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "action_type": self.action_type.value,
            "parameters_schema": dict(self.parameters_schema),
            "required_features": list(self.required_features),
            "requires_payment_preview": self.requires_payment_preview,
        }


@dataclass(frozen=True)
class ToolContext:
    user_id: str
    conversation_id: Optional[str] = None
    plan_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    subscription_plan: str = "FREE"
    features: FrozenSet[str] = frozenset()

    def for_action(self, plan_id: str, action_id: str) -> "ToolContext":
        return replace(self, plan_id=plan_id, idempotency_key=f"{plan_id}_{action_id}")

    @classmethod
    def for_plan_tier(cls, user_id: str, subscription_plan: str = "FREE", **extras: Any) -> "ToolContext":
        features = PLAN_FEATURES.get(subscription_plan, frozenset())
        return cls(user_id=user_id, subscription_plan=subscription_plan, features=features, **extras)


@dataclass
class ToolResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    affected_entities: List[Dict[str, str]] = field(default_factory=list)

    @property
    def entity_ids(self) -> List[str]:
        return [str(entity["id"]) for entity in self.affected_entities if entity.get("id")]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "error_code": self.error_code,
            "affected_entities": list(self.affected_entities),
        }

    @classmethod
    def failure(cls, error: str, *, code: Optional[str] = None) -> "ToolResult":
        return cls(success=False, error=error, error_code=code)


@runtime_checkable
class AgentTool(Protocol):
    metadata: ToolMetadata

    def check_permission(self, context: ToolContext) -> bool:
        ...

    def validate(self, params: Mapping[str, Any], context: ToolContext) -> ValidationOutcome:
        ...

    def execute(self, params: Mapping[str, Any], context: ToolContext) -> ToolResult:
        ...


class BaseTool:
    """
    Helper base for concrete tools: feature gating, ownership checks and plan-tier
    entity limits that ``validate`` implementations can call.
    """

    metadata: ToolMetadata

    def __init__(self, ownership: OwnershipLookup) -> None:
        self._ownership = ownership

    def check_permission(self, context: ToolContext) -> bool:
        missing = [feature for feature in self.metadata.required_features if feature not in context.features]
        if missing:
            logger.debug("Tool '%s' requires features %s", self.metadata.name, missing)
            return False
        return True

    def validate(self, params: Mapping[str, Any], context: ToolContext) -> ValidationOutcome:
        return True

    def execute(self, params: Mapping[str, Any], context: ToolContext) -> ToolResult:
        raise NotImplementedError

    def verify_ownership(self, kind: EntityKind, entity_id: Any, user_id: str) -> bool:
        if entity_id in (None, ""):
            return False
        entity_id = str(entity_id)
        if kind is EntityKind.CLIENT:
            return self._ownership.client_owned_by(entity_id, user_id)
        if kind is EntityKind.QUOTE:
            return self._ownership.quote_owned_by(entity_id, user_id)
        if kind is EntityKind.WORK_ORDER:
            return self._ownership.work_order_owned_by(entity_id, user_id)
        if kind is EntityKind.CLIENT_PAYMENT:
            return self._ownership.client_payment_owned_by(entity_id, user_id)
        raise ValueError(f"Unsupported entity kind: {kind}")

    def check_entity_limit(self, kind: EntityKind, context: ToolContext) -> ValidationOutcome:
        limits = PLAN_ENTITY_LIMITS.get(context.subscription_plan, PLAN_ENTITY_LIMITS["FREE"])
        limit = limits.get(kind)
        if limit is None:
            return True
        current = self._ownership.count_owned(kind, context.user_id)
        if current >= limit:
            label = kind.value.lower().replace("_", " ")
            return f"Your {context.subscription_plan} plan allows at most {limit} {label} record(s)"
        return True

    @staticmethod
    def require_fields(params: Mapping[str, Any], *names: str) -> ValidationOutcome:
        missing = [name for name in names if params.get(name) in (None, "")]
        if missing:
            return f"Missing required field(s): {', '.join(missing)}"
        return True
