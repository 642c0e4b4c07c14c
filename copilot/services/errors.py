"""
Typed failures raised by the orchestration layer and mapped to HTTP codes by the server.
"""
from __future__ import annotations

from typing import Mapping, Optional


class CopilotError(RuntimeError):
    """Base class for failures that are safe to surface to the caller."""

    code = "copilot_error"
    status_code = 500

    def __init__(self, message: str, *, details: Optional[Mapping[str, object]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})


class NotFoundError(CopilotError):
    """Entity is absent or owned by another tenant; both read the same."""

    code = "not_found"
    status_code = 404


class ValidationError(CopilotError):
    code = "validation_error"
    status_code = 400


class PlanExpiredError(CopilotError):
    code = "plan_expired"
    status_code = 400


class PermissionDeniedError(CopilotError):
    code = "permission_denied"
    status_code = 403


class IdempotencyConflictError(CopilotError):
    """The same idempotency key was reused with a different request."""

    code = "idempotency_conflict"
    status_code = 409


class RateLimitExceededError(CopilotError):
    code = "rate_limited"
    status_code = 429
