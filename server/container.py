"""
Composition root: builds every service once and wires repositories into them.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional

from copilot.services.audit import AuditService
from copilot.services.conversation_state import ConversationStateService
from copilot.services.idempotency import IdempotencyService
from copilot.services.models import utcnow
from copilot.services.orchestrator import ChatOrchestrator, IntentInterpreter
from copilot.services.plan_service import PlanService
from copilot.services.tool_registry import ToolRegistry

from server.data_access import (
    AuditRepository,
    BusinessRepository,
    ConversationRepository,
    IdempotencyRepository,
    PlanRepository,
)
from server.data_access.user_repository import ensure_users_table
from server.services.ai_gateway_service import AIGatewayService
from server.services.business_tools import build_business_tools
from server.services.rate_limiter import RateLimiter


@dataclass
class Container:
    audit: AuditService
    idempotency: IdempotencyService
    registry: ToolRegistry
    plans: PlanService
    states: ConversationStateService
    orchestrator: ChatOrchestrator
    gateway: AIGatewayService
    business: BusinessRepository
    conversations: ConversationRepository


def build_container(
    config: Mapping[str, object],
    *,
    clock: Callable[[], datetime] = utcnow,
    interpreter: Optional[IntentInterpreter] = None,
) -> Container:
    ensure_users_table()
    business = BusinessRepository()
    conversations = ConversationRepository(clock=clock)

    audit = AuditService(AuditRepository(), clock=clock)
    idempotency = IdempotencyService(IdempotencyRepository(), clock=clock)

    registry = ToolRegistry(audit, idempotency)
    for tool in build_business_tools(business):
        registry.register(tool)

    plans = PlanService(PlanRepository(), registry, audit, business, clock=clock)
    states = ConversationStateService(conversations, clock=clock)
    orchestrator = ChatOrchestrator(states, registry, plans, interpreter)
    rate_limiter = RateLimiter(
        conversations,
        audit,
        max_per_minute=int(config.get("RATE_LIMIT_PER_MINUTE", 30)),
        max_failed_per_hour=int(config.get("RATE_LIMIT_FAILED_PER_HOUR", 50)),
        clock=clock,
    )
    gateway = AIGatewayService(conversations, orchestrator, plans, registry, audit, rate_limiter)

    return Container(
        audit=audit,
        idempotency=idempotency,
        registry=registry,
        plans=plans,
        states=states,
        orchestrator=orchestrator,
        gateway=gateway,
        business=business,
        conversations=conversations,
    )
