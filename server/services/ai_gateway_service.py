from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from copilot.services.audit import AuditService
from copilot.services.errors import NotFoundError, ValidationError
from copilot.services.models import AuditCategory
from copilot.services.orchestrator import ChatOrchestrator
from copilot.services.plan_service import PlanService
from copilot.services.tool_registry import ToolRegistry
from copilot.services.tooling import ToolContext, ToolResult

from server.data_access.conversation_repository import ConversationRepository
from server.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000


class AIGatewayService:
    """
    Entry point used by the HTTP layer: rate limiting, conversation bookkeeping and
    delegation to the orchestrator and plan service.
    """

    def __init__(
        self,
        conversations: ConversationRepository,
        orchestrator: ChatOrchestrator,
        plan_service: PlanService,
        registry: ToolRegistry,
        audit_service: AuditService,
        rate_limiter: RateLimiter,
    ) -> None:
        self._conversations = conversations
        self._orchestrator = orchestrator
        self._plans = plan_service
        self._registry = registry
        self._audit = audit_service
        self._rate_limiter = rate_limiter

    def chat(
        self,
        user: Mapping[str, Any],
        message: str,
        *,
        conversation_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        started = time.monotonic()
        user_id = str(user["user_id"])
        message = (message or "").strip()
        if not message:
            raise ValidationError("Message is required")
        if len(message) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message must be at most {MAX_MESSAGE_LENGTH} characters")

        self._rate_limiter.check(user_id)

        if conversation_id:
            if self._conversations.get_conversation(conversation_id, user_id) is None:
                raise NotFoundError("Conversation not found")
        else:
            conversation_id = self._conversations.create_conversation(user_id, title=message[:80])["id"]

        context = self._context_for(user, conversation_id, ip_address, user_agent)
        try:
            self._conversations.add_message(conversation_id, "user", message)
            result = self._orchestrator.process_message(user_id, conversation_id, message, context)
            self._conversations.add_message(
                conversation_id,
                "assistant",
                result.message,
                metadata={
                    "state": result.state.value,
                    "plan_id": result.plan_id,
                    "executed_tools": result.executed_tools,
                    "latency_ms": int((time.monotonic() - started) * 1000),
                },
            )
        except Exception as exc:
            self._audit.log(
                category=AuditCategory.ACTION_FAILED,
                action="chat_error",
                success=False,
                user_id=user_id,
                conversation_id=conversation_id,
                error_message=str(exc) or exc.__class__.__name__,
                ip_address=ip_address,
                user_agent=user_agent,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            raise

        payload = result.to_dict()
        payload["conversation_id"] = conversation_id
        return payload

    def confirm_plan(
        self,
        user: Mapping[str, Any],
        plan_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        context = self._context_for(user, None, ip_address, user_agent)
        return self._plans.confirm_plan(plan_id, context.user_id, context).to_dict()

    def reject_plan(
        self,
        user: Mapping[str, Any],
        plan_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        context = self._context_for(user, None, ip_address, user_agent)
        return self._plans.reject_plan(plan_id, context.user_id, context)

    def get_pending_plans(self, user: Mapping[str, Any]) -> List[Dict[str, Any]]:
        return [plan.to_dict() for plan in self._plans.get_pending_plans(str(user["user_id"]))]

    def get_conversation(self, user: Mapping[str, Any], conversation_id: str) -> Dict[str, Any]:
        conversation = self._conversations.get_conversation(conversation_id, str(user["user_id"]))
        if conversation is None:
            raise NotFoundError("Conversation not found")
        conversation["messages"] = self._conversations.list_messages(conversation_id)
        return conversation

    def list_conversations(self, user: Mapping[str, Any], limit: int = 10) -> List[Dict[str, Any]]:
        return self._conversations.list_conversations(str(user["user_id"]), limit=limit)

    def list_tools(self, user: Mapping[str, Any]) -> List[Dict[str, Any]]:
        context = self._context_for(user, None, None, None)
        return [metadata.to_dict() for metadata in self._registry.available_tools(context)]

    def execute_tool(
        self,
        user: Mapping[str, Any],
        tool_name: str,
        params: Mapping[str, Any],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ToolResult:
        """Direct execution, only for read tools; writes must go through a confirmed plan."""
        if self._registry.get_tool(tool_name) is None:
            return ToolResult.failure("Tool not found", code="NOT_FOUND")
        if self._registry.requires_confirmation(tool_name):
            return ToolResult.failure(
                "This operation requires confirmation. Please use the chat interface.",
                code="CONFIRMATION_REQUIRED",
            )
        context = self._context_for(user, None, ip_address, user_agent)
        return self._registry.execute_tool(tool_name, params, context)

    def get_security_logs(self, user: Mapping[str, Any], limit: int = 100) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self._audit.get_security_logs(str(user["user_id"]), limit=limit)]

    @staticmethod
    def _context_for(
        user: Mapping[str, Any],
        conversation_id: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> ToolContext:
        return ToolContext.for_plan_tier(
            str(user["user_id"]),
            str(user.get("subscription_plan") or "FREE"),
            conversation_id=conversation_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
