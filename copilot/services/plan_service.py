"""
Plan lifecycle: PROPOSE -> CONFIRM/REJECT -> EXECUTE.

Status moves only forward::

    PENDING_CONFIRMATION -> CONFIRMED -> EXECUTING -> COMPLETED | FAILED
    PENDING_CONFIRMATION -> REJECTED
    PENDING_CONFIRMATION -> EXPIRED

Every transition is a conditional update scoped to (plan id, owner, current status),
so two concurrent confirmations of the same plan cannot both succeed.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .audit import AuditService
from .errors import IdempotencyConflictError, NotFoundError, PlanExpiredError
from .models import (
    ActionResult,
    AuditCategory,
    PaymentPreview,
    Plan,
    PlanAction,
    PlanExecutionResult,
    PlanStatus,
    plan_expiry_from,
    utcnow,
)
from .ports import OwnershipLookup, PlanStorePort
from .tool_registry import ToolRegistry
from .tooling import ToolContext

logger = logging.getLogger(__name__)

PREVIEW_INVALID_ERROR = "Payment preview is no longer valid"


class PlanService:
    def __init__(
        self,
        store: PlanStorePort,
        registry: ToolRegistry,
        audit_service: AuditService,
        ownership: OwnershipLookup,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._plans = store
        self._registry = registry
        self._audit = audit_service
        self._ownership = ownership
        self._clock = clock

    def create_plan(
        self,
        *,
        user_id: str,
        conversation_id: Optional[str],
        summary: str,
        actions: Sequence[PlanAction],
        idempotency_key: Optional[str] = None,
    ) -> Plan:
        key = idempotency_key or f"plan_{uuid.uuid4().hex}"

        existing = self._plans.find_by_idempotency_key(key)
        if existing is not None:
            return self._reuse_existing(existing, user_id)

        now = self._clock()
        plan_id = uuid.uuid4().hex
        previews: List[PaymentPreview] = []
        for action in actions:
            preview = action.payment_preview
            if preview is None:
                continue
            preview.id = preview.id or uuid.uuid4().hex
            preview.plan_id = plan_id
            preview.created_at = now
            previews.append(preview)

        plan = Plan(
            id=plan_id,
            user_id=user_id,
            conversation_id=conversation_id,
            summary=summary,
            actions=list(actions),
            status=PlanStatus.PENDING_CONFIRMATION,
            idempotency_key=key,
            expires_at=plan_expiry_from(now),
            created_at=now,
            previews=previews,
        )

        if not self._plans.insert(plan):
            # Lost a race against a concurrent request carrying the same key.
            existing = self._plans.find_by_idempotency_key(key)
            if existing is None:
                raise NotFoundError("Plan not found")
            return self._reuse_existing(existing, user_id)

        self._audit.log(
            category=AuditCategory.PLAN_CREATED,
            action="create_plan",
            success=True,
            user_id=user_id,
            conversation_id=conversation_id,
            plan_id=plan.id,
            input_payload={"summary": summary, "action_count": len(plan.actions)},
        )
        logger.info("Created plan %s with %s action(s)", plan.id, len(plan.actions))
        return plan

    def _reuse_existing(self, existing: Plan, user_id: str) -> Plan:
        if existing.user_id != user_id:
            raise IdempotencyConflictError("Idempotency key already used for another plan")
        logger.warning("Duplicate plan request with idempotency key %s", existing.idempotency_key)
        return existing

    def get_plan(self, plan_id: str, user_id: str) -> Plan:
        plan = self._plans.get(plan_id, user_id)
        if plan is None:
            raise NotFoundError("Plan not found")
        return plan

    def confirm_plan(self, plan_id: str, user_id: str, context: ToolContext) -> PlanExecutionResult:
        now = self._clock()
        plan = self._plans.get(plan_id, user_id, PlanStatus.PENDING_CONFIRMATION)
        if plan is None:
            raise NotFoundError("Plan not found or already processed")

        if plan.is_expired(now):
            self._plans.transition(plan_id, user_id, PlanStatus.PENDING_CONFIRMATION, PlanStatus.EXPIRED)
            self._audit.log(
                category=AuditCategory.PLAN_REJECTED,
                action="plan_expired",
                success=False,
                user_id=user_id,
                conversation_id=plan.conversation_id,
                plan_id=plan_id,
                error_message="Plan expired before confirmation",
                ip_address=context.ip_address,
                user_agent=context.user_agent,
            )
            raise PlanExpiredError("Plan expired")

        confirmed = self._plans.transition(
            plan_id,
            user_id,
            PlanStatus.PENDING_CONFIRMATION,
            PlanStatus.CONFIRMED,
            confirmed_at=now,
        )
        if not confirmed:
            raise NotFoundError("Plan not found or already processed")

        self._audit.log(
            category=AuditCategory.PLAN_CONFIRMED,
            action="confirm_plan",
            success=True,
            user_id=user_id,
            conversation_id=plan.conversation_id,
            plan_id=plan_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        logger.info("Plan %s confirmed by user %s", plan_id, user_id)
        return self._execute_plan(plan_id, user_id, context)

    def reject_plan(self, plan_id: str, user_id: str, context: ToolContext) -> bool:
        rejected = self._plans.transition(
            plan_id,
            user_id,
            PlanStatus.PENDING_CONFIRMATION,
            PlanStatus.REJECTED,
        )
        if not rejected:
            raise NotFoundError("Plan not found or already processed")

        self._audit.log(
            category=AuditCategory.PLAN_REJECTED,
            action="reject_plan",
            success=True,
            user_id=user_id,
            conversation_id=context.conversation_id,
            plan_id=plan_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        logger.info("Plan %s rejected by user %s", plan_id, user_id)
        return True

    def _execute_plan(self, plan_id: str, user_id: str, context: ToolContext) -> PlanExecutionResult:
        plan = self._plans.get(plan_id, user_id, PlanStatus.CONFIRMED)
        if plan is None:
            raise NotFoundError("Plan not found or not confirmed")
        if not self._plans.transition(plan_id, user_id, PlanStatus.CONFIRMED, PlanStatus.EXECUTING):
            raise NotFoundError("Plan not found or not confirmed")

        try:
            results = self._run_actions(plan, user_id, context)
        except Exception as exc:
            logger.exception("Plan %s aborted during execution", plan_id)
            self._plans.transition(
                plan_id,
                user_id,
                PlanStatus.EXECUTING,
                PlanStatus.FAILED,
                executed_at=self._clock(),
                error_message=str(exc),
            )
            raise

        failures = [result for result in results if not result.success]
        final_status = PlanStatus.FAILED if failures else PlanStatus.COMPLETED
        success_count = len(results) - len(failures)

        self._plans.transition(
            plan_id,
            user_id,
            PlanStatus.EXECUTING,
            final_status,
            executed_at=self._clock(),
            result_summary=f"Executed {success_count}/{len(plan.actions)} actions successfully",
            error_message="; ".join(str(result.error) for result in failures) if failures else None,
        )

        self._audit.log(
            category=AuditCategory.PLAN_EXECUTED,
            action="execute_plan",
            success=not failures,
            user_id=user_id,
            conversation_id=plan.conversation_id,
            plan_id=plan_id,
            output_payload={"results": [result.to_dict() for result in results]},
            error_message="Some actions failed" if failures else None,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        logger.info("Plan %s executed: %s/%s actions succeeded", plan_id, success_count, len(plan.actions))
        return PlanExecutionResult(plan_id=plan_id, status=final_status, results=results)

    def _run_actions(self, plan: Plan, user_id: str, context: ToolContext) -> List[ActionResult]:
        previews_valid = True
        if plan.has_payment_actions:
            previews_valid = self.validate_payment_previews(plan.id, user_id)

        results: List[ActionResult] = []
        # Strictly in list order; a failed action does not stop the rest.
        for action in plan.actions:
            if action.payment_preview is not None and not previews_valid:
                results.append(ActionResult(action.id, action.tool, False, error=PREVIEW_INVALID_ERROR))
                logger.warning("Action %s skipped: %s", action.id, PREVIEW_INVALID_ERROR)
                continue

            action_context = context.for_action(plan.id, action.id)
            if action_context.conversation_id is None and plan.conversation_id:
                action_context = replace(action_context, conversation_id=plan.conversation_id)
            result = self._registry.execute_tool(action.tool, action.params, action_context)
            results.append(ActionResult(action.id, action.tool, result.success, result.data, result.error))

            if not result.success:
                logger.warning("Action %s failed: %s", action.id, result.error)
                continue
            preview = action.payment_preview
            if preview is not None and preview.id and result.entity_ids:
                self._plans.consume_preview(preview.id, result.entity_ids[0])
        return results

    def get_pending_plans(self, user_id: str) -> List[Plan]:
        return self._plans.list_pending(user_id, self._clock())

    def cleanup_expired_plans(self) -> int:
        count = self._plans.expire_pending(self._clock())
        if count > 0:
            logger.info("Expired %s plan(s)", count)
        return count

    def create_payment_preview(self, plan_id: str, user_id: str, preview: PaymentPreview) -> PaymentPreview:
        self.get_plan(plan_id, user_id)
        preview.id = preview.id or uuid.uuid4().hex
        preview.plan_id = plan_id
        preview.created_at = self._clock()
        return self._plans.add_preview(plan_id, preview)

    def validate_payment_previews(self, plan_id: str, user_id: str) -> bool:
        for preview in self._plans.list_previews(plan_id, user_id):
            if not preview.valid:
                return False
            if not self._ownership.client_owned_by(preview.client_id, user_id):
                if preview.id:
                    self._plans.invalidate_preview(preview.id)
                logger.warning("Payment preview %s invalid: client %s missing", preview.id, preview.client_id)
                return False
        return True
