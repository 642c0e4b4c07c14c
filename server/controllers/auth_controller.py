# server/controllers/auth_controller.py
from functools import wraps

from flask import Blueprint, g, request, jsonify
from server.services.auth_service import register_user, login_user, verify_token

auth_bp = Blueprint("auth", __name__)


def require_auth(view):
    """Reject the request unless it carries a valid ``Authorization: Bearer`` token."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return jsonify({"error": "Unauthorized", "code": "unauthorized"}), 401
        user, error = verify_token(token.strip())
        if error:
            return jsonify({"error": error, "code": "unauthorized"}), 401
        g.current_user = user
        return view(*args, **kwargs)

    return wrapper


@auth_bp.route("/api/auth/register", methods=["POST"])
def register():
    data = request.get_json() or {}
    username = data.get("username")
    email = data.get("email")
    password = data.get("password")
    subscription_plan = str(data.get("subscription_plan") or "FREE").upper()

    result, error = register_user(username, email, password, subscription_plan)
    if error:
        code = 400 if error != "Email already registered" else 409
        return jsonify({"error": error}), code
    return jsonify({"message": "User registered", "user": result}), 201


@auth_bp.route("/api/auth/login", methods=["POST"])
def login():
    data = request.get_json() or {}
    email = data.get("email")
    password = data.get("password")

    result, error = login_user(email, password)
    if error:
        code = 404 if error == "User not found" else 401
        return jsonify({"error": error}), code
    return jsonify(result), 200


@auth_bp.route("/api/auth/me", methods=["GET"])
@require_auth
def me():
    return jsonify({"user": g.current_user}), 200
