# server/services/auth_service.py
from datetime import datetime, timedelta, timezone
import logging
import os
import jwt
from werkzeug.security import generate_password_hash, check_password_hash

from server.data_access.user_repository import (
    ensure_users_table,
    create_user,
    find_user_by_email,
    find_user_by_id,
)
from server.config.settings import load_config

logger = logging.getLogger(__name__)

# Load configuration
APP_ENV = os.getenv("APP_ENV", "development")
CONFIG = load_config(APP_ENV)
SECRET_KEY = CONFIG.get("SECRET_KEY", "change-me")
JWT_EXPIRE_HOURS = int(CONFIG.get("JWT_EXPIRE_HOURS", 2))  # default 2 hours
JWT_ALGORITHM = "HS256"


def register_user(username: str, email: str, password: str, subscription_plan: str = "FREE"):
    """
    Register a new user.
    - Ensure the users table exists.
    - Validate uniqueness of the email.
    - Hash the password and persist the record on the requested subscription plan.
    """
    ensure_users_table()

    if not username or not email or not password:
        return None, "Missing fields"
    if subscription_plan not in ("FREE", "PRO"):
        return None, "Unknown subscription plan"

    existing = find_user_by_email(email)
    if existing:
        return None, "Email already registered"

    hashed = generate_password_hash(password, method="pbkdf2:sha256", salt_length=16)
    user_id = create_user(username, email, hashed, subscription_plan)
    return {
        "user_id": user_id,
        "email": email,
        "username": username,
        "subscription_plan": subscription_plan,
    }, None


def login_user(email: str, password: str):
    """
    Authenticate a user and return a JWT token on success.
    """
    ensure_users_table()

    if not email or not password:
        return None, "Missing fields"

    user = find_user_by_email(email)
    if not user:
        return None, "User not found"

    if not check_password_hash(user["password_hash"], password):
        return None, "Invalid password"

    exp = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
    token = jwt.encode({"sub": user["email"], "uid": user["id"], "exp": exp}, SECRET_KEY, algorithm=JWT_ALGORITHM)

    return {"token": token, "email": user["email"]}, None


def verify_token(token: str):
    """
    Decode a bearer token and load the user it belongs to.
    Returns (user, error) like the other helpers in this module.
    """
    if not token:
        return None, "Missing token"
    try:
        claims = jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None, "Token expired"
    except jwt.InvalidTokenError as exc:
        logger.info("Rejected token: %s", exc)
        return None, "Invalid token"

    ensure_users_table()
    user = find_user_by_id(claims.get("uid")) if claims.get("uid") is not None else None
    if not user or user["email"] != claims.get("sub"):
        return None, "Invalid token"
    return {
        "user_id": str(user["id"]),
        "email": user["email"],
        "username": user["username"],
        "subscription_plan": user.get("subscription_plan") or "FREE",
    }, None
