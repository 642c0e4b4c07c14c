from __future__ import annotations

import re
from typing import Any, List, Mapping, Optional

from copilot.services.models import ActionType, EntityKind
from copilot.services.tooling import BaseTool, ToolContext, ToolMetadata, ToolResult, ValidationOutcome

from server.data_access.business_repository import BusinessRepository

BILLING_TYPES = ("BOLETO", "PIX", "CREDIT_CARD")
_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class _BusinessTool(BaseTool):
    def __init__(self, repository: BusinessRepository) -> None:
        super().__init__(repository)
        self._repository = repository

    @staticmethod
    def _coerce_amount(value: object) -> Optional[float]:
        try:
            amount = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None
        return amount if amount > 0 else None

    @staticmethod
    def _coerce_limit(value: object) -> int:
        try:
            limit = int(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            limit = 10
        return max(1, min(limit, 50))


class SearchClientsTool(_BusinessTool):
    """Look up the caller's clients by name or email."""

    metadata = ToolMetadata(
        name="clients.search",
        description="Search clients by name or email",
        action_type=ActionType.READ,
        parameters_schema={
            "type": "object",
            "properties": {"query": {"type": "string"}, "limit": {"type": "integer"}},
        },
        required_features=("clients",),
    )

    def execute(self, params: Mapping[str, Any], context: ToolContext) -> ToolResult:
        query = str(params.get("query") or "").strip() or None
        clients = self._repository.search_clients(context.user_id, query, self._coerce_limit(params.get("limit")))
        return ToolResult(success=True, data={"clients": clients, "count": len(clients)})


class CreateClientTool(_BusinessTool):
    metadata = ToolMetadata(
        name="clients.create",
        description="Create a new client",
        action_type=ActionType.CREATE,
        parameters_schema={
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "email": {"type": "string"},
                "phone": {"type": "string"},
                "document": {"type": "string"},
            },
            "required": ["name"],
        },
        required_features=("clients",),
    )

    def validate(self, params: Mapping[str, Any], context: ToolContext) -> ValidationOutcome:
        outcome = self.require_fields(params, "name")
        if outcome is not True:
            return outcome
        email = params.get("email")
        if email and "@" not in str(email):
            return "Invalid email address"
        return self.check_entity_limit(EntityKind.CLIENT, context)

    def execute(self, params: Mapping[str, Any], context: ToolContext) -> ToolResult:
        client = self._repository.create_client(
            context.user_id,
            str(params["name"]).strip(),
            email=params.get("email"),
            phone=params.get("phone"),
            document=params.get("document"),
        )
        return ToolResult(
            success=True,
            data={"client": client},
            affected_entities=[{"type": EntityKind.CLIENT.value, "id": client["id"]}],
        )


class CreateQuoteTool(_BusinessTool):
    metadata = ToolMetadata(
        name="quotes.create",
        description="Create a quote for an existing client",
        action_type=ActionType.CREATE,
        parameters_schema={
            "type": "object",
            "properties": {
                "client_id": {"type": "string"},
                "title": {"type": "string"},
                "amount": {"type": "number"},
            },
            "required": ["client_id", "title", "amount"],
        },
        required_features=("quotes",),
    )

    def validate(self, params: Mapping[str, Any], context: ToolContext) -> ValidationOutcome:
        outcome = self.require_fields(params, "client_id", "title", "amount")
        if outcome is not True:
            return outcome
        if self._coerce_amount(params.get("amount")) is None:
            return "Amount must be a positive number"
        if not self.verify_ownership(EntityKind.CLIENT, params.get("client_id"), context.user_id):
            return "Client not found"
        return self.check_entity_limit(EntityKind.QUOTE, context)

    def execute(self, params: Mapping[str, Any], context: ToolContext) -> ToolResult:
        quote = self._repository.create_quote(
            context.user_id,
            str(params["client_id"]),
            str(params["title"]).strip(),
            self._coerce_amount(params.get("amount")) or 0.0,
        )
        return ToolResult(
            success=True,
            data={"quote": quote},
            affected_entities=[{"type": EntityKind.QUOTE.value, "id": quote["id"]}],
        )


class CreateWorkOrderTool(_BusinessTool):
    metadata = ToolMetadata(
        name="work_orders.create",
        description="Open a work order for an existing client",
        action_type=ActionType.CREATE,
        parameters_schema={
            "type": "object",
            "properties": {
                "client_id": {"type": "string"},
                "description": {"type": "string"},
                "quote_id": {"type": "string"},
            },
            "required": ["client_id", "description"],
        },
        required_features=("work_orders",),
    )

    def validate(self, params: Mapping[str, Any], context: ToolContext) -> ValidationOutcome:
        outcome = self.require_fields(params, "client_id", "description")
        if outcome is not True:
            return outcome
        if not self.verify_ownership(EntityKind.CLIENT, params.get("client_id"), context.user_id):
            return "Client not found"
        quote_id = params.get("quote_id")
        if quote_id and not self.verify_ownership(EntityKind.QUOTE, quote_id, context.user_id):
            return "Quote not found"
        return self.check_entity_limit(EntityKind.WORK_ORDER, context)

    def execute(self, params: Mapping[str, Any], context: ToolContext) -> ToolResult:
        work_order = self._repository.create_work_order(
            context.user_id,
            str(params["client_id"]),
            str(params["description"]).strip(),
            quote_id=params.get("quote_id") or None,
        )
        return ToolResult(
            success=True,
            data={"work_order": work_order},
            affected_entities=[{"type": EntityKind.WORK_ORDER.value, "id": work_order["id"]}],
        )


class CreatePaymentTool(_BusinessTool):
    """
    Create a charge for a client. Only runs inside a confirmed plan whose payment
    preview is still valid.
    """

    metadata = ToolMetadata(
        name="payments.create",
        description="Create a payment charge for a client",
        action_type=ActionType.PAYMENT_CREATE,
        parameters_schema={
            "type": "object",
            "properties": {
                "client_id": {"type": "string"},
                "value": {"type": "number"},
                "due_date": {"type": "string", "format": "date"},
                "billing_type": {"type": "string", "enum": list(BILLING_TYPES)},
                "description": {"type": "string"},
            },
            "required": ["client_id", "value", "due_date"],
        },
        required_features=("billing",),
        requires_payment_preview=True,
    )

    def validate(self, params: Mapping[str, Any], context: ToolContext) -> ValidationOutcome:
        outcome = self.require_fields(params, "client_id", "value", "due_date")
        if outcome is not True:
            return outcome
        errors: List[str] = []
        if self._coerce_amount(params.get("value")) is None:
            errors.append("Value must be a positive number")
        if not _DATE_PATTERN.match(str(params.get("due_date"))):
            errors.append("Due date must use YYYY-MM-DD")
        billing_type = str(params.get("billing_type") or "BOLETO").upper()
        if billing_type not in BILLING_TYPES:
            errors.append(f"Unsupported billing type: {billing_type}")
        if errors:
            return "; ".join(errors)
        if not self.verify_ownership(EntityKind.CLIENT, params.get("client_id"), context.user_id):
            return "Client not found"
        return self.check_entity_limit(EntityKind.CLIENT_PAYMENT, context)

    def execute(self, params: Mapping[str, Any], context: ToolContext) -> ToolResult:
        payment = self._repository.create_client_payment(
            context.user_id,
            str(params["client_id"]),
            billing_type=str(params.get("billing_type") or "BOLETO").upper(),
            value=self._coerce_amount(params.get("value")) or 0.0,
            due_date=str(params["due_date"]),
            description=params.get("description"),
        )
        return ToolResult(
            success=True,
            data={"payment": payment},
            affected_entities=[{"type": EntityKind.CLIENT_PAYMENT.value, "id": payment["id"]}],
        )


def build_business_tools(repository: BusinessRepository) -> List[BaseTool]:
    return [
        SearchClientsTool(repository),
        CreateClientTool(repository),
        CreateQuoteTool(repository),
        CreateWorkOrderTool(repository),
        CreatePaymentTool(repository),
    ]
