import pytest

from copilot.services.errors import IdempotencyConflictError, NotFoundError, PlanExpiredError
from copilot.services.models import (
    TERMINAL_PLAN_STATUSES,
    ActionType,
    AuditCategory,
    EntityKind,
    PaymentPreview,
    PlanAction,
    PlanStatus,
)
from copilot.services.plan_service import PREVIEW_INVALID_ERROR
from copilot.services.tooling import ToolContext, ToolResult

from fakes import StubTool


@pytest.fixture
def context():
    return ToolContext.for_plan_tier("user-1", "PRO", ip_address="127.0.0.1")


@pytest.fixture
def tools(registry):
    client_tool = StubTool("clients.create", required=("name",))
    payment_tool = StubTool(
        "payments.create",
        ActionType.PAYMENT_CREATE,
        required_features=("billing",),
        requires_payment_preview=True,
    )
    registry.register(client_tool)
    registry.register(payment_tool)
    return {"client": client_tool, "payment": payment_tool}


def _client_action(action_id="a1", name="Acme"):
    return PlanAction(
        id=action_id,
        tool="clients.create",
        params={"name": name},
        description=f"Create client {name}",
        action_type=ActionType.CREATE,
    )


def _payment_action(action_id="a2", client_id="client-9"):
    return PlanAction(
        id=action_id,
        tool="payments.create",
        params={"client_id": client_id, "value": 150.0, "due_date": "2025-02-01"},
        description="Charge client",
        action_type=ActionType.PAYMENT_CREATE,
        payment_preview=PaymentPreview(
            client_id=client_id,
            client_name="Acme",
            billing_type="PIX",
            value=150.0,
            due_date="2025-02-01",
        ),
    )


def test_create_plan_sets_pending_with_five_minute_expiry(plan_service, clock, audit_store):
    plan = plan_service.create_plan(user_id="user-1", conversation_id="conv-1", summary="Create Acme", actions=[_client_action()])

    assert plan.status is PlanStatus.PENDING_CONFIRMATION
    assert (plan.expires_at - clock()).total_seconds() == 300
    assert plan.idempotency_key.startswith("plan_")
    assert audit_store.actions() == ["create_plan"]
    assert audit_store.entries[0].category is AuditCategory.PLAN_CREATED


def test_create_plan_twice_with_same_key_returns_same_plan(plan_service, plan_store, audit_store):
    first = plan_service.create_plan(user_id="user-1", conversation_id=None, summary="s", actions=[_client_action()], idempotency_key="key-1")
    second = plan_service.create_plan(user_id="user-1", conversation_id=None, summary="s", actions=[_client_action()], idempotency_key="key-1")

    assert second.id == first.id
    assert len(plan_store.plans) == 1
    assert audit_store.actions() == ["create_plan"]


def test_create_plan_with_foreign_key_is_a_conflict(plan_service):
    plan_service.create_plan(user_id="user-1", conversation_id=None, summary="s", actions=[_client_action()], idempotency_key="key-1")

    with pytest.raises(IdempotencyConflictError):
        plan_service.create_plan(user_id="user-2", conversation_id=None, summary="s", actions=[_client_action()], idempotency_key="key-1")


def test_get_plan_is_tenant_scoped(plan_service):
    plan = plan_service.create_plan(user_id="user-1", conversation_id=None, summary="s", actions=[_client_action()])

    assert plan_service.get_plan(plan.id, "user-1").id == plan.id
    with pytest.raises(NotFoundError) as missing:
        plan_service.get_plan(plan.id, "user-2")
    with pytest.raises(NotFoundError) as absent:
        plan_service.get_plan("does-not-exist", "user-1")
    assert str(missing.value) == str(absent.value)


def test_confirm_executes_client_and_payment_actions(plan_service, plan_store, ownership, tools, context, audit_store):
    ownership.add(EntityKind.CLIENT, "client-9", "user-1")
    plan = plan_service.create_plan(
        user_id="user-1",
        conversation_id="conv-1",
        summary="Create client and charge",
        actions=[_client_action(), _payment_action()],
    )

    result = plan_service.confirm_plan(plan.id, "user-1", context)

    assert result.status is PlanStatus.COMPLETED
    assert len(result.results) == 2
    assert all(item.success for item in result.results)
    stored = plan_store.plans[plan.id]
    assert stored.status is PlanStatus.COMPLETED
    assert stored.result_summary == "Executed 2/2 actions successfully"
    assert stored.confirmed_at is not None and stored.executed_at is not None
    preview = plan_store.previews[plan.actions[1].payment_preview.id]
    assert preview.created_payment_id == "payments.create-1"
    assert "execute_plan" in audit_store.actions()

    # Each action runs with an idempotency key derived from plan and action ids.
    _, client_context = tools["client"].calls[0]
    assert client_context.idempotency_key == f"{plan.id}_a1"
    assert client_context.plan_id == plan.id
    assert client_context.conversation_id == "conv-1"


def test_confirm_after_window_expires_plan(plan_service, plan_store, clock, context, tools):
    plan = plan_service.create_plan(user_id="user-1", conversation_id=None, summary="s", actions=[_client_action()])
    clock.advance(minutes=5, seconds=1)

    with pytest.raises(PlanExpiredError):
        plan_service.confirm_plan(plan.id, "user-1", context)

    assert plan_store.plans[plan.id].status is PlanStatus.EXPIRED
    assert tools["client"].calls == []


def test_confirm_exactly_at_expiry_is_still_allowed(plan_service, clock, context, tools):
    plan = plan_service.create_plan(user_id="user-1", conversation_id=None, summary="s", actions=[_client_action()])
    clock.advance(minutes=5)

    result = plan_service.confirm_plan(plan.id, "user-1", context)

    assert result.status is PlanStatus.COMPLETED


def test_second_confirm_is_not_found(plan_service, context, tools):
    plan = plan_service.create_plan(user_id="user-1", conversation_id=None, summary="s", actions=[_client_action()])
    plan_service.confirm_plan(plan.id, "user-1", context)

    with pytest.raises(NotFoundError):
        plan_service.confirm_plan(plan.id, "user-1", context)
    assert len(tools["client"].calls) == 1


def test_other_tenant_cannot_confirm(plan_service, plan_store, tools):
    plan = plan_service.create_plan(user_id="user-1", conversation_id=None, summary="s", actions=[_client_action()])

    with pytest.raises(NotFoundError):
        plan_service.confirm_plan(plan.id, "user-2", ToolContext.for_plan_tier("user-2", "PRO"))
    assert plan_store.plans[plan.id].status is PlanStatus.PENDING_CONFIRMATION


def test_failed_action_does_not_stop_later_actions(plan_service, registry, context, plan_store):
    registry.register(StubTool("quotes.create", handler=lambda p, c: ToolResult.failure("client missing")))
    after = StubTool("clients.update", ActionType.UPDATE)
    registry.register(after)
    registry.register(StubTool("clients.create"))
    actions = [
        PlanAction("a1", "quotes.create", {}, "quote", ActionType.CREATE),
        PlanAction("a2", "clients.update", {"id": "c1"}, "update", ActionType.UPDATE),
    ]
    plan = plan_service.create_plan(user_id="user-1", conversation_id=None, summary="s", actions=actions)

    result = plan_service.confirm_plan(plan.id, "user-1", context)

    assert result.status is PlanStatus.FAILED
    assert [item.success for item in result.results] == [False, True]
    assert len(after.calls) == 1
    stored = plan_store.plans[plan.id]
    assert stored.result_summary == "Executed 1/2 actions successfully"
    assert stored.error_message == "client missing"


def test_storage_error_mid_execution_marks_plan_failed(plan_service, plan_store, ownership, tools, context, monkeypatch):
    ownership.add(EntityKind.CLIENT, "client-9", "user-1")
    plan = plan_service.create_plan(
        user_id="user-1",
        conversation_id="conv-1",
        summary="Charge client",
        actions=[_payment_action()],
    )

    def broken_consume(preview_id, payment_id):
        raise RuntimeError("disk I/O error")

    monkeypatch.setattr(plan_store, "consume_preview", broken_consume)

    with pytest.raises(RuntimeError):
        plan_service.confirm_plan(plan.id, "user-1", context)

    stored = plan_store.plans[plan.id]
    assert stored.status is PlanStatus.FAILED
    assert stored.error_message == "disk I/O error"
    assert stored.executed_at is not None
    assert len(tools["payment"].calls) == 1


def test_invalid_preview_fails_payment_actions_only(plan_service, ownership, tools, context, plan_store):
    # client-9 is not owned by user-1, so the preview no longer holds.
    plan = plan_service.create_plan(
        user_id="user-1",
        conversation_id=None,
        summary="s",
        actions=[_client_action(), _payment_action()],
    )

    result = plan_service.confirm_plan(plan.id, "user-1", context)

    assert result.status is PlanStatus.FAILED
    assert result.results[0].success is True
    assert result.results[1].success is False
    assert result.results[1].error == PREVIEW_INVALID_ERROR
    assert tools["payment"].calls == []
    assert plan_store.previews[plan.actions[1].payment_preview.id].valid is False


def test_reject_plan_is_terminal(plan_service, plan_store, context, audit_store):
    plan = plan_service.create_plan(user_id="user-1", conversation_id=None, summary="s", actions=[_client_action()])

    assert plan_service.reject_plan(plan.id, "user-1", context) is True
    assert plan_store.plans[plan.id].status is PlanStatus.REJECTED
    with pytest.raises(NotFoundError):
        plan_service.reject_plan(plan.id, "user-1", context)
    with pytest.raises(NotFoundError):
        plan_service.confirm_plan(plan.id, "user-1", context)
    assert audit_store.actions().count("reject_plan") == 1


def test_status_never_leaves_terminal_state(plan_service, plan_store, context, tools):
    plan = plan_service.create_plan(user_id="user-1", conversation_id=None, summary="s", actions=[_client_action()])
    plan_service.confirm_plan(plan.id, "user-1", context)
    final = plan_store.plans[plan.id].status
    assert final in TERMINAL_PLAN_STATUSES

    for target in PlanStatus:
        assert plan_store.transition(plan.id, "user-1", PlanStatus.PENDING_CONFIRMATION, target) is False
    with pytest.raises(NotFoundError):
        plan_service.reject_plan(plan.id, "user-1", context)
    assert plan_store.plans[plan.id].status is final


def test_pending_plans_exclude_expired_and_cleanup_marks_them(plan_service, plan_store, clock):
    old = plan_service.create_plan(user_id="user-1", conversation_id=None, summary="old", actions=[_client_action()])
    clock.advance(minutes=4)
    fresh = plan_service.create_plan(user_id="user-1", conversation_id=None, summary="fresh", actions=[_client_action()])
    plan_service.create_plan(user_id="user-2", conversation_id=None, summary="other", actions=[_client_action()])
    clock.advance(minutes=2)

    assert [plan.id for plan in plan_service.get_pending_plans("user-1")] == [fresh.id]
    assert plan_service.cleanup_expired_plans() == 1
    assert plan_store.plans[old.id].status is PlanStatus.EXPIRED
    assert plan_store.plans[fresh.id].status is PlanStatus.PENDING_CONFIRMATION


def test_create_payment_preview_attaches_to_plan(plan_service, plan_store, ownership):
    ownership.add(EntityKind.CLIENT, "client-9", "user-1")
    plan = plan_service.create_plan(user_id="user-1", conversation_id=None, summary="s", actions=[_client_action()])

    preview = plan_service.create_payment_preview(
        plan.id,
        "user-1",
        PaymentPreview(client_id="client-9", billing_type="BOLETO", value=99.9, due_date="2025-03-01"),
    )

    assert preview.id and preview.plan_id == plan.id
    assert [item.id for item in plan_store.list_previews(plan.id, "user-1")] == [preview.id]
    assert plan_service.validate_payment_previews(plan.id, "user-1") is True
    with pytest.raises(NotFoundError):
        plan_service.create_payment_preview(plan.id, "user-2", PaymentPreview("client-9", "PIX", 1.0, "2025-03-01"))
