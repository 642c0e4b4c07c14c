from .services.audit import AuditService
from .services.conversation_state import ConversationState, ConversationStateService
from .services.idempotency import IdempotencyService
from .services.orchestrator import ChatOrchestrator, KeywordInterpreter
from .services.plan_service import PlanService
from .services.tool_registry import ToolRegistry

__all__ = [
    "AuditService",
    "ChatOrchestrator",
    "ConversationState",
    "ConversationStateService",
    "IdempotencyService",
    "KeywordInterpreter",
    "PlanService",
    "ToolRegistry",
]
