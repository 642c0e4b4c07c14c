"""
Registry of copilot tools and the single privileged execution path.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from .audit import AuditService
from .errors import IdempotencyConflictError
from .idempotency import IdempotencyService, result_from_response
from .models import ActionType, AuditCategory
from .tooling import AgentTool, ToolContext, ToolMetadata, ToolResult

logger = logging.getLogger(__name__)


class ToolRegistry:
    """
    Keeps track of available tools and enforces validate -> authorize -> execute -> audit.

    The composition root registers every tool before the app serves requests.
    """

    def __init__(self, audit_service: AuditService, idempotency_service: Optional[IdempotencyService] = None) -> None:
        self._tools: Dict[str, AgentTool] = {}
        self._lock = threading.Lock()
        self._audit = audit_service
        self._idempotency = idempotency_service

    def register(self, tool: AgentTool) -> None:
        name = tool.metadata.name
        with self._lock:
            if name in self._tools:
                logger.warning("Tool '%s' already registered; overwriting", name)
            self._tools[name] = tool
        logger.debug("Registered tool '%s'", name)

    def get_tool(self, name: str) -> Optional[AgentTool]:
        return self._tools.get(name)

    def list_metadata(self) -> List[ToolMetadata]:
        return [tool.metadata for tool in list(self._tools.values())]

    def available_tools(self, context: ToolContext) -> List[ToolMetadata]:
        available: List[ToolMetadata] = []
        for tool in list(self._tools.values()):
            try:
                allowed = tool.check_permission(context)
            except Exception as exc:
                logger.warning("Permission check failed for tool '%s': %s", tool.metadata.name, exc)
                continue
            if allowed:
                available.append(tool.metadata)
        return available

    def requires_confirmation(self, name: str) -> bool:
        tool = self.get_tool(name)
        if tool is None:
            return True
        return tool.metadata.action_type is not ActionType.READ

    def requires_payment_preview(self, name: str) -> bool:
        tool = self.get_tool(name)
        if tool is None:
            return False
        return bool(tool.metadata.requires_payment_preview)

    def execute_tool(self, name: str, params: Mapping[str, Any], context: ToolContext) -> ToolResult:
        started = time.monotonic()
        params = dict(params or {})

        def audit(category: AuditCategory, action: str, success: bool, **fields: Any) -> None:
            self._audit.log(
                category=category,
                action=action,
                success=success,
                user_id=context.user_id,
                conversation_id=context.conversation_id,
                plan_id=context.plan_id,
                tool=name,
                input_payload=params,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                duration_ms=int((time.monotonic() - started) * 1000),
                **fields,
            )

        tool = self.get_tool(name)
        if tool is None:
            error = f"Tool '{name}' not found"
            audit(AuditCategory.SECURITY_BLOCK, "tool_not_found", False, error_message=error)
            return ToolResult.failure(error, code="NOT_FOUND")

        try:
            allowed = tool.check_permission(context)
        except Exception as exc:
            logger.warning("Permission check raised for tool '%s': %s", name, exc)
            allowed = False
        if not allowed:
            error = f"Permission denied for tool '{name}'"
            audit(AuditCategory.SECURITY_BLOCK, "permission_denied", False, error_message=error)
            return ToolResult.failure(error, code="PERMISSION_DENIED")

        keyed = (
            self._idempotency is not None
            and bool(context.idempotency_key)
            and tool.metadata.action_type is not ActionType.READ
        )
        if keyed:
            # A retried write is answered from the stored outcome, even if validation would now fail.
            try:
                check = self._idempotency.check(context.user_id, name, context.idempotency_key, params)
            except IdempotencyConflictError as exc:
                audit(AuditCategory.ACTION_FAILED, "idempotency_conflict", False, error_message=exc.message)
                return ToolResult.failure(exc.message, code="IDEMPOTENCY_CONFLICT")
            if check.is_idempotent and check.existing_response is not None:
                replayed = result_from_response(check.existing_response)
                self._audit_outcome(audit, replayed, was_idempotent=True)
                return replayed

        try:
            outcome = tool.validate(params, context)
        except Exception as exc:
            logger.exception("Validation raised for tool '%s'", name)
            outcome = str(exc) or "Validation failed"
        if outcome is not True:
            error = outcome if isinstance(outcome, str) and outcome else "Validation failed"
            audit(AuditCategory.TOOL_CALL, "validation_failed", False, error_message=error)
            return ToolResult.failure(error, code="VALIDATION_ERROR")

        try:
            if keyed:
                result = self._idempotency.run_and_record(
                    context.user_id,
                    name,
                    context.idempotency_key,
                    params,
                    lambda: tool.execute(params, context),
                ).result
            else:
                result = tool.execute(params, context)
        except Exception as exc:
            logger.exception("Tool '%s' raised during execution", name)
            error = str(exc) or exc.__class__.__name__
            audit(AuditCategory.ACTION_FAILED, "execute_error", False, error_message=error)
            return ToolResult.failure(error, code="EXECUTION_ERROR")

        self._audit_outcome(audit, result, was_idempotent=False)
        return result

    @staticmethod
    def _audit_outcome(audit: Callable[..., None], result: ToolResult, *, was_idempotent: bool) -> None:
        first_entity = result.affected_entities[0] if result.affected_entities else None
        audit(
            AuditCategory.ACTION_SUCCESS if result.success else AuditCategory.ACTION_FAILED,
            "execute",
            result.success,
            output_payload={
                "affected_entity": first_entity,
                "was_idempotent": was_idempotent,
                "data": result.data,
            },
            error_message=result.error,
        )
