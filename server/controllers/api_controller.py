import logging

from flask import Blueprint, current_app, g, jsonify, request

from copilot.services.errors import CopilotError, ValidationError
from server.controllers.auth_controller import require_auth

logger = logging.getLogger(__name__)

api_blueprint = Blueprint("api", __name__)


def _gateway():
    return current_app.extensions["copilot"].gateway


def _client_info():
    return {
        "ip_address": request.headers.get("X-Forwarded-For", request.remote_addr),
        "user_agent": request.headers.get("User-Agent"),
    }


def _require_plan_id(payload: dict) -> str:
    plan_id = payload.get("plan_id") or payload.get("planId")
    if not plan_id or not isinstance(plan_id, str):
        raise ValidationError("plan_id is required")
    return plan_id


def _coerce_limit(value, default: int, maximum: int) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        limit = default
    return max(1, min(limit, maximum))


@api_blueprint.errorhandler(CopilotError)
def handle_copilot_error(error: CopilotError):
    if error.status_code >= 500:
        logger.error("Unhandled copilot error: %s", error.message)
    payload = {"error": error.message, "code": error.code}
    if error.details:
        payload["details"] = error.details
    return jsonify(payload), error.status_code


@api_blueprint.get("/health")
def healthcheck():
    """Lightweight health probe for uptime checks."""
    return jsonify({"status": "ok"}), 200


@api_blueprint.post("/chat")
@require_auth
def chat():
    """
    Send one user message to the copilot:
    {
      "message": "/clients.create {\"name\": \"Acme\"}",
      "conversation_id": "..." | null
    }
    """
    payload = request.get_json(silent=True) or {}
    result = _gateway().chat(
        g.current_user,
        str(payload.get("message") or ""),
        conversation_id=payload.get("conversation_id") or payload.get("conversationId"),
        **_client_info(),
    )
    return jsonify(result), 200


@api_blueprint.post("/plans/confirm")
@require_auth
def confirm_plan():
    payload = request.get_json(silent=True) or {}
    result = _gateway().confirm_plan(g.current_user, _require_plan_id(payload), **_client_info())
    return jsonify(result), 200


@api_blueprint.post("/plans/reject")
@require_auth
def reject_plan():
    payload = request.get_json(silent=True) or {}
    plan_id = _require_plan_id(payload)
    _gateway().reject_plan(g.current_user, plan_id, **_client_info())
    return jsonify({"plan_id": plan_id, "status": "REJECTED"}), 200


@api_blueprint.get("/plans/pending")
@require_auth
def pending_plans():
    return jsonify({"plans": _gateway().get_pending_plans(g.current_user)}), 200


@api_blueprint.get("/conversations")
@require_auth
def list_conversations():
    limit = _coerce_limit(request.args.get("limit"), 10, 50)
    return jsonify({"conversations": _gateway().list_conversations(g.current_user, limit)}), 200


@api_blueprint.get("/conversations/<conversation_id>")
@require_auth
def get_conversation(conversation_id: str):
    return jsonify({"conversation": _gateway().get_conversation(g.current_user, conversation_id)}), 200


@api_blueprint.get("/tools")
@require_auth
def list_tools():
    return jsonify({"tools": _gateway().list_tools(g.current_user)}), 200


@api_blueprint.post("/tools/<tool_name>/execute")
@require_auth
def execute_tool(tool_name: str):
    payload = request.get_json(silent=True) or {}
    params = payload.get("params") or {}
    if not isinstance(params, dict):
        raise ValidationError("params must be an object")
    result = _gateway().execute_tool(g.current_user, tool_name, params, **_client_info())
    return jsonify(result.to_dict()), 200 if result.success else 400


@api_blueprint.get("/audit/security")
@require_auth
def security_logs():
    limit = _coerce_limit(request.args.get("limit"), 100, 500)
    return jsonify({"logs": _gateway().get_security_logs(g.current_user, limit)}), 200
