import pytest

from copilot.services.models import EntityKind
from copilot.services.tooling import PLAN_ENTITY_LIMITS, ToolContext
from server.data_access.business_repository import BusinessRepository
from server.services.business_tools import (
    CreateClientTool,
    CreatePaymentTool,
    CreateQuoteTool,
    CreateWorkOrderTool,
    SearchClientsTool,
    build_business_tools,
)


@pytest.fixture
def repository(temp_db):
    return BusinessRepository()


@pytest.fixture
def free_context():
    return ToolContext.for_plan_tier("user-1", "FREE")


@pytest.fixture
def pro_context():
    return ToolContext.for_plan_tier("user-1", "PRO")


def test_build_business_tools_names(repository):
    names = [tool.metadata.name for tool in build_business_tools(repository)]

    assert names == ["clients.search", "clients.create", "quotes.create", "work_orders.create", "payments.create"]


def test_create_client_validates_and_persists(repository, free_context):
    tool = CreateClientTool(repository)

    assert tool.validate({}, free_context) == "Missing required field(s): name"
    assert tool.validate({"name": "Acme", "email": "nope"}, free_context) == "Invalid email address"
    assert tool.validate({"name": "Acme"}, free_context) is True

    result = tool.execute({"name": " Acme ", "email": "ops@acme.io"}, free_context)

    assert result.success is True
    assert result.data["client"]["name"] == "Acme"
    assert result.entity_ids == [result.data["client"]["id"]]
    assert repository.client_owned_by(result.data["client"]["id"], "user-1")


def test_free_plan_client_limit(repository, free_context, pro_context):
    tool = CreateClientTool(repository)
    for index in range(PLAN_ENTITY_LIMITS["FREE"][EntityKind.CLIENT]):
        repository.create_client("user-1", f"Client {index}")

    outcome = tool.validate({"name": "One more"}, free_context)

    assert isinstance(outcome, str) and "at most 10" in outcome
    assert tool.validate({"name": "One more"}, pro_context) is True


def test_quote_requires_owned_client(repository, free_context):
    tool = CreateQuoteTool(repository)
    mine = repository.create_client("user-1", "Acme")
    theirs = repository.create_client("user-2", "Globex")

    assert tool.validate({"client_id": theirs["id"], "title": "Fix", "amount": 10}, free_context) == "Client not found"
    assert tool.validate({"client_id": mine["id"], "title": "Fix", "amount": -1}, free_context) == "Amount must be a positive number"
    assert tool.validate({"client_id": mine["id"], "title": "Fix", "amount": "99.5"}, free_context) is True

    result = tool.execute({"client_id": mine["id"], "title": "Fix", "amount": "99.5"}, free_context)
    assert result.data["quote"]["amount"] == 99.5


def test_work_order_checks_quote_ownership(repository, free_context):
    tool = CreateWorkOrderTool(repository)
    client = repository.create_client("user-1", "Acme")
    foreign_client = repository.create_client("user-2", "Globex")
    foreign_quote = repository.create_quote("user-2", foreign_client["id"], "Other", 10)

    params = {"client_id": client["id"], "description": "Install", "quote_id": foreign_quote["id"]}
    assert tool.validate(params, free_context) == "Quote not found"

    params.pop("quote_id")
    assert tool.validate(params, free_context) is True
    assert tool.execute(params, free_context).data["work_order"]["status"] == "OPEN"


def test_payment_tool_requires_billing_feature(repository, free_context, pro_context):
    tool = CreatePaymentTool(repository)

    assert tool.metadata.requires_payment_preview is True
    assert tool.check_permission(free_context) is False
    assert tool.check_permission(pro_context) is True


def test_payment_tool_validation(repository, pro_context):
    tool = CreatePaymentTool(repository)
    client = repository.create_client("user-1", "Acme")

    outcome = tool.validate({"client_id": client["id"], "value": 0, "due_date": "01/02/2025", "billing_type": "cash"}, pro_context)
    assert "Value must be a positive number" in outcome
    assert "Due date must use YYYY-MM-DD" in outcome
    assert "Unsupported billing type: CASH" in outcome

    params = {"client_id": client["id"], "value": 120, "due_date": "2025-02-01", "billing_type": "pix"}
    assert tool.validate(params, pro_context) is True
    result = tool.execute(params, pro_context)
    assert result.data["payment"]["billing_type"] == "PIX"
    assert repository.client_payment_owned_by(result.entity_ids[0], "user-1")


def test_search_only_returns_own_clients(repository, free_context):
    repository.create_client("user-1", "Acme")
    repository.create_client("user-2", "Acme Two")

    result = SearchClientsTool(repository).execute({"query": "Acme", "limit": "500"}, free_context)

    assert result.data["count"] == 1
