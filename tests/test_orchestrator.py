import json

import pytest

from copilot.services.conversation_state import ConversationState
from copilot.services.models import ActionType, EntityKind, PlanStatus
from copilot.services.orchestrator import AssistantIntent, ChatOrchestrator, IntentKind, KeywordInterpreter
from copilot.services.tooling import ToolContext, ToolResult

from fakes import StubTool


@pytest.fixture
def tools(registry):
    search = StubTool(
        "clients.search",
        ActionType.READ,
        handler=lambda params, ctx: ToolResult(success=True, data={"clients": [{"id": "c1", "name": "Acme"}]}),
    )
    create = StubTool("clients.create", required=("name",))
    payment = StubTool(
        "payments.create",
        ActionType.PAYMENT_CREATE,
        required=("client_id", "value", "due_date"),
        required_features=("billing",),
        requires_payment_preview=True,
    )
    for tool in (search, create, payment):
        registry.register(tool)
    return {"search": search, "create": create, "payment": payment}


@pytest.fixture
def orchestrator(state_service, registry, plan_service, tools):
    return ChatOrchestrator(state_service, registry, plan_service)


@pytest.fixture
def context():
    return ToolContext.for_plan_tier("user-1", "PRO", ip_address="127.0.0.1")


def command(tool, **params):
    return f"/{tool} {json.dumps(params)}"


def test_plain_message_gets_help_reply(orchestrator, context):
    result = orchestrator.process_message("user-1", "conv-1", "hello there", context)

    assert result.state is ConversationState.IDLE
    assert "clients.search" in result.message


def test_read_tool_runs_without_confirmation(orchestrator, context, tools, plan_store):
    result = orchestrator.process_message("user-1", "conv-1", command("clients.search", query="Ac"), context)

    assert result.state is ConversationState.IDLE
    assert result.data == {"clients": [{"id": "c1", "name": "Acme"}]}
    assert result.executed_tools[0]["success"] is True
    assert len(tools["search"].calls) == 1
    assert plan_store.plans == {}


def test_write_tool_collects_fields_then_confirms(orchestrator, context, tools, plan_store, state_service):
    first = orchestrator.process_message("user-1", "conv-1", command("clients.create", email="a@x.io"), context)
    assert first.state is ConversationState.PLANNING
    assert first.pending_plan["missing_fields"] == ["name"]
    assert "name" in first.message
    assert tools["create"].calls == []

    second = orchestrator.process_message("user-1", "conv-1", command("clients.create", name="Acme"), context)
    assert second.state is ConversationState.AWAITING_CONFIRMATION
    assert second.plan_id in plan_store.plans
    assert plan_store.plans[second.plan_id].actions[0].params == {"email": "a@x.io", "name": "Acme"}
    assert tools["create"].calls == []

    third = orchestrator.process_message("user-1", "conv-1", "yes", context)
    assert third.state is ConversationState.IDLE
    assert third.plan_id == second.plan_id
    assert third.executed_tools[0]["success"] is True
    assert len(tools["create"].calls) == 1
    assert plan_store.plans[second.plan_id].status is PlanStatus.COMPLETED

    state = state_service.get_state("conv-1")
    assert state.state is ConversationState.IDLE
    assert state.pending_plan is None
    assert state.last_tool_result["status"] == "COMPLETED"


def test_cancel_while_awaiting_rejects_plan(orchestrator, context, tools, plan_store):
    proposed = orchestrator.process_message("user-1", "conv-1", command("clients.create", name="Acme"), context)

    result = orchestrator.process_message("user-1", "conv-1", "cancel", context)

    assert result.state is ConversationState.IDLE
    assert plan_store.plans[proposed.plan_id].status is PlanStatus.REJECTED
    assert tools["create"].calls == []


def test_cancel_while_planning_clears_draft(orchestrator, context, state_service):
    orchestrator.process_message("user-1", "conv-1", command("clients.create"), context)

    result = orchestrator.process_message("user-1", "conv-1", "cancel", context)

    assert result.state is ConversationState.IDLE
    assert state_service.get_state("conv-1").pending_plan is None


def test_confirm_without_pending_plan(orchestrator, context):
    result = orchestrator.process_message("user-1", "conv-1", "yes", context)

    assert result.state is ConversationState.IDLE
    assert result.message == "There is no pending operation."


def test_unrecognised_reply_keeps_waiting(orchestrator, context):
    proposed = orchestrator.process_message("user-1", "conv-1", command("clients.create", name="Acme"), context)

    result = orchestrator.process_message("user-1", "conv-1", "what does this do?", context)

    assert result.state is ConversationState.AWAITING_CONFIRMATION
    assert result.plan_id == proposed.plan_id


def test_editing_params_while_awaiting_replaces_plan(orchestrator, context, plan_store):
    old = orchestrator.process_message("user-1", "conv-1", command("clients.create", name="Acme"), context)

    new = orchestrator.process_message("user-1", "conv-1", command("clients.create", name="Globex"), context)

    assert new.state is ConversationState.AWAITING_CONFIRMATION
    assert new.plan_id != old.plan_id
    assert plan_store.plans[old.plan_id].status is PlanStatus.REJECTED
    assert plan_store.plans[new.plan_id].actions[0].params["name"] == "Globex"


def test_returning_to_earlier_params_proposes_a_fresh_plan(orchestrator, context, plan_store, state_service):
    first = orchestrator.process_message("user-1", "conv-1", command("clients.create", name="Acme"), context)
    orchestrator.process_message("user-1", "conv-1", command("clients.create", name="Globex"), context)

    again = orchestrator.process_message("user-1", "conv-1", command("clients.create", name="Acme"), context)

    assert again.state is ConversationState.AWAITING_CONFIRMATION
    assert again.plan_id not in (None, first.plan_id)
    assert plan_store.plans[first.plan_id].status is PlanStatus.REJECTED
    assert plan_store.plans[again.plan_id].status is PlanStatus.PENDING_CONFIRMATION
    assert state_service.get_state("conv-1").pending_plan.plan_id == again.plan_id

    done = orchestrator.process_message("user-1", "conv-1", "yes", context)
    assert done.executed_tools[0]["success"] is True


def test_payment_plan_carries_preview_and_warning(orchestrator, context, ownership, plan_store, state_service, tools):
    ownership.add(EntityKind.CLIENT, "client-9", "user-1")

    proposed = orchestrator.process_message(
        "user-1",
        "conv-1",
        command("payments.create", client_id="client-9", value=120.5, due_date="2025-02-01", billing_type="pix"),
        context,
    )

    assert proposed.state is ConversationState.AWAITING_CONFIRMATION
    assert "REAL charge" in proposed.message
    plan = plan_store.plans[proposed.plan_id]
    preview = plan.actions[0].payment_preview
    assert preview is not None and preview.billing_type == "PIX"
    assert state_service.get_billing_preview_id("conv-1") == preview.id

    executed = orchestrator.process_message("user-1", "conv-1", "confirm", context)
    assert executed.executed_tools[0]["success"] is True
    assert len(tools["payment"].calls) == 1
    assert plan_store.previews[preview.id].created_payment_id is not None


def test_payment_tool_forbidden_on_free_plan(orchestrator, audit_store, plan_store, tools):
    free = ToolContext.for_plan_tier("user-1", "FREE")

    result = orchestrator.process_message(
        "user-1", "conv-1", command("payments.create", client_id="c", value=1, due_date="2025-02-01"), free
    )

    assert result.state is ConversationState.IDLE
    assert plan_store.plans == {}
    assert tools["payment"].calls == []
    assert "permission_denied" in audit_store.actions()


def test_unknown_tool_is_reported(orchestrator, context, audit_store):
    result = orchestrator.process_message("user-1", "conv-1", command("nonexistent.tool"), context)

    assert result.executed_tools[0]["success"] is False
    assert "Tool 'nonexistent.tool' not found" in result.message
    assert audit_store.actions() == ["tool_not_found"]


def test_confirming_after_expiry_finds_nothing(orchestrator, context, clock, tools, plan_service):
    orchestrator.process_message("user-1", "conv-1", command("clients.create", name="Acme"), context)
    clock.advance(minutes=6)

    result = orchestrator.process_message("user-1", "conv-1", "yes", context)

    assert result.message == "There is no pending operation."
    assert tools["create"].calls == []
    assert plan_service.cleanup_expired_plans() == 1


def test_plan_already_processed_elsewhere(orchestrator, context, plan_service, tools):
    proposed = orchestrator.process_message("user-1", "conv-1", command("clients.create", name="Acme"), context)
    plan_service.reject_plan(proposed.plan_id, "user-1", context)

    result = orchestrator.process_message("user-1", "conv-1", "yes", context)

    assert result.state is ConversationState.IDLE
    assert "could not be executed" in result.message
    assert tools["create"].calls == []


def test_stuck_execution_without_plan_is_reset(orchestrator, context, state_service):
    state_service.set_state("conv-1", ConversationState.EXECUTING)

    result = orchestrator.process_message("user-1", "conv-1", "hello", context)

    assert result.state is ConversationState.IDLE


def test_execution_in_progress_is_reported(orchestrator, context, state_service):
    orchestrator.process_message("user-1", "conv-1", command("clients.create", name="Acme"), context)
    state_service.start_execution("conv-1")

    result = orchestrator.process_message("user-1", "conv-1", "yes", context)

    assert result.state is ConversationState.EXECUTING


def test_unexpected_execution_error_resets_conversation(orchestrator, context, plan_service, state_service, monkeypatch):
    orchestrator.process_message("user-1", "conv-1", command("clients.create", name="Acme"), context)

    def broken_confirm(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(plan_service, "confirm_plan", broken_confirm)

    with pytest.raises(RuntimeError):
        orchestrator.process_message("user-1", "conv-1", "yes", context)

    data = state_service.get_state("conv-1")
    assert data.state is ConversationState.IDLE
    assert data.pending_plan is None


def test_custom_interpreter_can_plan_directly(state_service, registry, plan_service, tools, context, plan_store):
    class ScriptedInterpreter:
        def interpret(self, message, state, available):
            return AssistantIntent(IntentKind.PLAN, tool="clients.create", params={"name": message})

    orchestrator = ChatOrchestrator(state_service, registry, plan_service, ScriptedInterpreter())

    result = orchestrator.process_message("user-1", "conv-1", "Initech", context)

    assert result.state is ConversationState.AWAITING_CONFIRMATION
    assert plan_store.plans[result.plan_id].actions[0].params == {"name": "Initech"}


def test_keyword_interpreter_parses_commands(state_service):
    interpreter = KeywordInterpreter()
    state = state_service.get_state("conv-x")

    assert interpreter.interpret("Yes!", state, []).kind is IntentKind.CONFIRM
    assert interpreter.interpret("cancel", state, []).kind is IntentKind.CANCEL
    assert interpreter.interpret("no", state, []).kind is IntentKind.REJECT
    broken = interpreter.interpret("/clients.create {not json}", state, [])
    assert broken.kind is IntentKind.RESPOND
    read = interpreter.interpret('/clients.search {"query": "a"}', state, [])
    assert read.kind is IntentKind.CALL_TOOL and read.params == {"query": "a"}
