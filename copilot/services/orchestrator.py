"""
Chat orchestrator: turns interpreted user turns into tool calls and plan operations,
driving the per-conversation state machine.
"""
from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from .conversation_state import ConversationState, ConversationStateData, ConversationStateService, PendingPlanDraft
from .errors import CopilotError, NotFoundError
from .idempotency import compute_request_hash
from .models import ActionType, PaymentPreview, PlanAction, PlanStatus
from .plan_service import PlanService
from .tool_registry import ToolRegistry
from .tooling import AgentTool, ToolContext, ToolMetadata

logger = logging.getLogger(__name__)

PAYMENT_PREVIEW_FIELDS = ("client_id", "value", "due_date")


class IntentKind(str, Enum):
    RESPOND = "RESPOND"
    CALL_TOOL = "CALL_TOOL"
    PLAN = "PLAN"
    CONFIRM = "CONFIRM"
    REJECT = "REJECT"
    CANCEL = "CANCEL"


@dataclass
class AssistantIntent:
    kind: IntentKind
    message: str = ""
    tool: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    missing_fields: List[str] = field(default_factory=list)


class IntentInterpreter(Protocol):
    def interpret(
        self,
        message: str,
        state: ConversationStateData,
        tools: Sequence[ToolMetadata],
    ) -> AssistantIntent:
        ...


class KeywordInterpreter:
    """
    Deterministic interpreter used when no language model is configured.

    Understands confirmation words and explicit ``/tool.name {"json": "params"}`` commands.
    """

    CONFIRM_WORDS = frozenset({"yes", "y", "confirm", "ok", "sim", "confirmo", "go ahead"})
    REJECT_WORDS = frozenset({"no", "n", "reject", "nao", "não"})
    CANCEL_WORDS = frozenset({"cancel", "stop", "cancelar", "abort"})
    COMMAND_PATTERN = re.compile(r"^/(?P<tool>[\w.]+)\s*(?P<args>\{.*\})?\s*$", re.DOTALL)

    def interpret(
        self,
        message: str,
        state: ConversationStateData,
        tools: Sequence[ToolMetadata],
    ) -> AssistantIntent:
        text = (message or "").strip()
        lowered = text.lower().rstrip("!. ")
        if lowered in self.CONFIRM_WORDS:
            return AssistantIntent(IntentKind.CONFIRM)
        if lowered in self.REJECT_WORDS:
            return AssistantIntent(IntentKind.REJECT)
        if lowered in self.CANCEL_WORDS:
            return AssistantIntent(IntentKind.CANCEL)

        match = self.COMMAND_PATTERN.match(text)
        if match:
            tool = match.group("tool")
            try:
                params = json.loads(match.group("args") or "{}")
            except json.JSONDecodeError:
                return AssistantIntent(IntentKind.RESPOND, message=f"Could not read the parameters for '{tool}'.")
            if not isinstance(params, dict):
                params = {}
            if state.state is ConversationState.PLANNING and state.pending_plan and state.pending_plan.tool == tool:
                return AssistantIntent(IntentKind.PLAN, tool=tool, params=params, missing_fields=self._missing(tool, params, tools, state))
            metadata = next((item for item in tools if item.name == tool), None)
            if metadata is not None and metadata.action_type is not ActionType.READ:
                return AssistantIntent(IntentKind.PLAN, tool=tool, params=params, missing_fields=self._missing(tool, params, tools, state))
            return AssistantIntent(IntentKind.CALL_TOOL, tool=tool, params=params)

        names = ", ".join(sorted(item.name for item in tools)) or "none"
        return AssistantIntent(
            IntentKind.RESPOND,
            message=(
                "I can help you manage clients, quotes, work orders and payments. "
                f"Available tools: {names}."
            ),
        )

    @staticmethod
    def _missing(
        tool: str,
        params: Mapping[str, Any],
        tools: Sequence[ToolMetadata],
        state: ConversationStateData,
    ) -> List[str]:
        collected = dict(state.pending_plan.collected_fields) if state.pending_plan and state.pending_plan.tool == tool else {}
        collected.update(params)
        metadata = next((item for item in tools if item.name == tool), None)
        required = list((metadata.parameters_schema or {}).get("required", [])) if metadata else []
        return [name for name in required if collected.get(name) in (None, "")]


@dataclass
class OrchestrationResult:
    message: str
    state: ConversationState
    pending_plan: Optional[Dict[str, Any]] = None
    plan_id: Optional[str] = None
    data: Any = None
    executed_tools: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "state": self.state.value,
            "pending_plan": self.pending_plan,
            "plan_id": self.plan_id,
            "data": self.data,
            "executed_tools": list(self.executed_tools),
        }


def _draft_view(draft: PendingPlanDraft) -> Dict[str, Any]:
    return {
        "action": draft.action,
        "params": dict(draft.params),
        "missing_fields": list(draft.missing_fields),
        "plan_id": draft.plan_id,
    }


class ChatOrchestrator:
    def __init__(
        self,
        state_service: ConversationStateService,
        registry: ToolRegistry,
        plan_service: PlanService,
        interpreter: Optional[IntentInterpreter] = None,
    ) -> None:
        self._states = state_service
        self._registry = registry
        self._plans = plan_service
        self._interpreter = interpreter or KeywordInterpreter()

    def process_message(
        self,
        user_id: str,
        conversation_id: str,
        message: str,
        context: ToolContext,
    ) -> OrchestrationResult:
        context = replace(context, conversation_id=conversation_id)
        state = self._states.get_state(conversation_id)
        logger.info("Processing message in state %s for conversation %s", state.state.value, conversation_id)

        if state.state is ConversationState.EXECUTING and state.pending_plan is None:
            logger.warning("Conversation %s stuck in EXECUTING without a plan; resetting", conversation_id)
            state = self._states.clear_pending_plan(conversation_id)

        intent = self._interpreter.interpret(message, state, self._registry.available_tools(context))

        if state.state is ConversationState.EXECUTING:
            return OrchestrationResult(
                message="An operation is still running. Please wait for it to finish.",
                state=ConversationState.EXECUTING,
            )
        if state.state is ConversationState.AWAITING_CONFIRMATION and state.pending_plan is not None:
            return self._handle_confirmation(user_id, conversation_id, intent, state.pending_plan, context)
        if state.state is ConversationState.PLANNING and state.pending_plan is not None:
            return self._handle_planning(user_id, conversation_id, intent, state.pending_plan, context)
        return self._handle_idle(user_id, conversation_id, intent, context)

    def _handle_idle(
        self,
        user_id: str,
        conversation_id: str,
        intent: AssistantIntent,
        context: ToolContext,
    ) -> OrchestrationResult:
        if intent.kind is IntentKind.CALL_TOOL and intent.tool:
            tool = self._registry.get_tool(intent.tool)
            if tool is not None and self._registry.requires_confirmation(intent.tool) and _permitted(tool, context):
                return self._start_draft(user_id, conversation_id, intent.tool, intent.params, [], context)
            # Reads run directly; unknown or forbidden tools go through the registry so the denial is audited.
            result = self._registry.execute_tool(intent.tool, intent.params, context)
            executed = [{"tool": intent.tool, "success": result.success, "result": result.data, "error": result.error}]
            if result.success:
                self._states.set_state(
                    conversation_id,
                    ConversationState.IDLE,
                    last_tool_result={"tool": intent.tool, "data": result.data},
                )
                return OrchestrationResult(
                    message=intent.message or f"Here are the results from {intent.tool}.",
                    state=ConversationState.IDLE,
                    data=result.data,
                    executed_tools=executed,
                )
            return OrchestrationResult(
                message=f"The request failed: {result.error}",
                state=ConversationState.IDLE,
                executed_tools=executed,
            )

        if intent.kind is IntentKind.PLAN and intent.tool:
            return self._start_draft(user_id, conversation_id, intent.tool, intent.params, intent.missing_fields, context)

        if intent.kind in (IntentKind.CONFIRM, IntentKind.REJECT, IntentKind.CANCEL):
            return OrchestrationResult(message="There is no pending operation.", state=ConversationState.IDLE)

        return OrchestrationResult(message=intent.message, state=ConversationState.IDLE)

    def _handle_planning(
        self,
        user_id: str,
        conversation_id: str,
        intent: AssistantIntent,
        draft: PendingPlanDraft,
        context: ToolContext,
    ) -> OrchestrationResult:
        if intent.kind in (IntentKind.CANCEL, IntentKind.REJECT):
            self._states.clear_pending_plan(conversation_id)
            return OrchestrationResult(message="Operation cancelled.", state=ConversationState.IDLE)

        if intent.kind is IntentKind.PLAN and intent.tool == draft.tool:
            data = self._states.update_pending_plan(
                conversation_id,
                collected_fields=intent.params,
                missing_fields=intent.missing_fields,
            )
            updated = data.pending_plan or draft
            if updated.missing_fields:
                return self._ask_for_missing(updated)
            return self._propose_plan(user_id, conversation_id, updated, context)

        # The user moved on; drop the draft and treat the turn as a fresh request.
        self._states.clear_pending_plan(conversation_id)
        return self._handle_idle(user_id, conversation_id, intent, context)

    def _handle_confirmation(
        self,
        user_id: str,
        conversation_id: str,
        intent: AssistantIntent,
        draft: PendingPlanDraft,
        context: ToolContext,
    ) -> OrchestrationResult:
        if intent.kind is IntentKind.CONFIRM:
            return self._execute_draft(user_id, conversation_id, draft, context)

        if intent.kind in (IntentKind.REJECT, IntentKind.CANCEL):
            self._discard_plan(draft, user_id, context)
            self._states.clear_pending_plan(conversation_id)
            return OrchestrationResult(message="Operation cancelled.", state=ConversationState.IDLE)

        if intent.kind is IntentKind.PLAN and intent.tool:
            self._discard_plan(draft, user_id, context)
            draft.plan_id = None
            draft.revision += 1
            self._states.set_state(conversation_id, ConversationState.PLANNING, pending_plan=draft)
            return self._handle_planning(user_id, conversation_id, intent, draft, context)

        return OrchestrationResult(
            message="Please confirm or cancel the pending operation.",
            state=ConversationState.AWAITING_CONFIRMATION,
            pending_plan=_draft_view(draft),
            plan_id=draft.plan_id,
        )

    def _start_draft(
        self,
        user_id: str,
        conversation_id: str,
        tool: str,
        params: Mapping[str, Any],
        missing_fields: List[str],
        context: ToolContext,
    ) -> OrchestrationResult:
        data = self._states.create_pending_plan(
            conversation_id,
            action=tool,
            tool=tool,
            params=params,
            collected_fields=params,
            missing_fields=missing_fields,
        )
        draft = data.pending_plan
        if draft is None:
            return OrchestrationResult(message="Could not start the operation.", state=data.state)
        if draft.missing_fields:
            return self._ask_for_missing(draft)
        return self._propose_plan(user_id, conversation_id, draft, context)

    def _ask_for_missing(self, draft: PendingPlanDraft) -> OrchestrationResult:
        lines = "\n".join(f"- {name}" for name in draft.missing_fields)
        return OrchestrationResult(
            message=f"To run {draft.action} I still need:\n{lines}",
            state=ConversationState.PLANNING,
            pending_plan=_draft_view(draft),
        )

    def _propose_plan(
        self,
        user_id: str,
        conversation_id: str,
        draft: PendingPlanDraft,
        context: ToolContext,
    ) -> OrchestrationResult:
        tool = self._registry.get_tool(draft.tool)
        if tool is None:
            self._states.clear_pending_plan(conversation_id)
            return OrchestrationResult(message=f"Tool '{draft.tool}' is not available.", state=ConversationState.IDLE)
        if not _permitted(tool, context):
            self._states.clear_pending_plan(conversation_id)
            return OrchestrationResult(
                message=f"Your plan does not allow '{draft.tool}'.",
                state=ConversationState.IDLE,
            )

        missing = _missing_required(tool.metadata, draft.params)
        if missing:
            data = self._states.update_pending_plan(conversation_id, missing_fields=missing)
            return self._ask_for_missing(data.pending_plan or draft)

        preview = None
        if tool.metadata.requires_payment_preview:
            preview = _build_preview(draft.params)
            if preview is None:
                data = self._states.update_pending_plan(conversation_id, missing_fields=list(PAYMENT_PREVIEW_FIELDS))
                return self._ask_for_missing(data.pending_plan or draft)

        summary = _format_plan_summary(tool.metadata, draft.params)
        action = PlanAction(
            id=uuid.uuid4().hex[:12],
            tool=draft.tool,
            params=dict(draft.params),
            description=summary,
            action_type=tool.metadata.action_type,
            payment_preview=preview,
        )
        # A retried turn maps to the same plan; an edit bumps the revision and gets a new one.
        fingerprint = compute_request_hash({"tool": draft.tool, "params": draft.params})[:16]
        plan_key = f"{conversation_id}:{draft.created_at.isoformat()}:r{draft.revision}:{fingerprint}"
        plan = self._plans.create_plan(
            user_id=user_id,
            conversation_id=conversation_id,
            summary=summary,
            actions=[action],
            idempotency_key=plan_key,
        )
        if plan.status is not PlanStatus.PENDING_CONFIRMATION:
            self._states.clear_pending_plan(conversation_id)
            return OrchestrationResult(
                message="This request was already processed.",
                state=ConversationState.IDLE,
                plan_id=plan.id,
            )
        self._states.attach_plan(conversation_id, plan.id, plan.expires_at)
        if preview is not None and preview.id:
            self._states.store_billing_preview(conversation_id, preview.id)

        draft.plan_id = plan.id
        prompt = "Do you want to confirm this operation?"
        if preview is not None:
            prompt = "WARNING: this operation will create a REAL charge. " + prompt
        return OrchestrationResult(
            message=f"{summary}\n\n{prompt}",
            state=ConversationState.AWAITING_CONFIRMATION,
            pending_plan=_draft_view(draft),
            plan_id=plan.id,
        )

    def _execute_draft(
        self,
        user_id: str,
        conversation_id: str,
        draft: PendingPlanDraft,
        context: ToolContext,
    ) -> OrchestrationResult:
        if not draft.plan_id:
            return self._propose_plan(user_id, conversation_id, draft, context)

        self._states.start_execution(conversation_id)
        try:
            execution = self._plans.confirm_plan(draft.plan_id, user_id, context)
        except CopilotError as exc:
            self._states.clear_pending_plan(conversation_id)
            return OrchestrationResult(
                message=f"The operation could not be executed: {exc.message}",
                state=ConversationState.IDLE,
                plan_id=draft.plan_id,
            )
        except Exception:
            self._states.clear_pending_plan(conversation_id)
            raise

        payload = execution.to_dict()
        self._states.complete_execution(conversation_id, payload)
        succeeded = sum(1 for result in execution.results if result.success)
        executed = [
            {"tool": result.tool, "success": result.success, "result": result.result, "error": result.error}
            for result in execution.results
        ]
        if succeeded == len(execution.results):
            message = "Done! The operation was executed successfully."
        else:
            errors = "; ".join(str(result.error) for result in execution.results if not result.success)
            message = f"Executed {succeeded}/{len(execution.results)} action(s). Errors: {errors}"
        return OrchestrationResult(
            message=message,
            state=ConversationState.IDLE,
            plan_id=draft.plan_id,
            data=payload,
            executed_tools=executed,
        )

    def _discard_plan(self, draft: PendingPlanDraft, user_id: str, context: ToolContext) -> None:
        if not draft.plan_id:
            return
        try:
            self._plans.reject_plan(draft.plan_id, user_id, context)
        except NotFoundError:
            logger.info("Plan %s was already processed", draft.plan_id)


def _permitted(tool: AgentTool, context: ToolContext) -> bool:
    try:
        return bool(tool.check_permission(context))
    except Exception as exc:
        logger.warning("Permission check failed for tool '%s': %s", tool.metadata.name, exc)
        return False


def _missing_required(metadata: ToolMetadata, params: Mapping[str, Any]) -> List[str]:
    required = (metadata.parameters_schema or {}).get("required", [])
    return [name for name in required if params.get(name) in (None, "")]


def _build_preview(params: Mapping[str, Any]) -> Optional[PaymentPreview]:
    if any(params.get(name) in (None, "") for name in PAYMENT_PREVIEW_FIELDS):
        return None
    try:
        value = float(params["value"])
    except (TypeError, ValueError):
        return None
    return PaymentPreview(
        client_id=str(params["client_id"]),
        client_name=params.get("client_name"),
        billing_type=str(params.get("billing_type") or "BOLETO").upper(),
        value=value,
        due_date=str(params["due_date"]),
        description=params.get("description"),
    )


def _format_plan_summary(metadata: ToolMetadata, params: Mapping[str, Any]) -> str:
    details = ", ".join(f"{key}={value}" for key, value in sorted(params.items()))
    return f"{metadata.description} ({details})" if details else metadata.description
