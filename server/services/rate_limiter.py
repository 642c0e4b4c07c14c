from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Protocol

from copilot.services.audit import AuditService
from copilot.services.errors import RateLimitExceededError
from copilot.services.models import AuditCategory, utcnow

logger = logging.getLogger(__name__)

ONE_HOUR_MS = 60 * 60 * 1000


class RecentMessageCounter(Protocol):
    def count_recent_user_messages(self, user_id: str, since: datetime) -> int:
        ...


class RateLimiter:
    """Per-user limits on chat volume and on recently failed operations."""

    def __init__(
        self,
        messages: RecentMessageCounter,
        audit_service: AuditService,
        *,
        max_per_minute: int = 30,
        max_failed_per_hour: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._messages = messages
        self._audit = audit_service
        self._max_per_minute = max_per_minute
        self._max_failed_per_hour = max_failed_per_hour
        self._clock = clock

    def check(self, user_id: str) -> None:
        recent = self._messages.count_recent_user_messages(user_id, self._clock() - timedelta(minutes=1))
        if recent >= self._max_per_minute:
            self._reject(
                user_id,
                "requests_per_minute_exceeded",
                f"Exceeded {self._max_per_minute} requests per minute",
                "You are sending too many messages. Please wait a moment.",
            )

        failed = self._audit.count_failed_operations(user_id, ONE_HOUR_MS)
        if failed >= self._max_failed_per_hour:
            self._reject(
                user_id,
                "failed_requests_exceeded",
                f"Exceeded {self._max_failed_per_hour} failed requests per hour",
                "Too many operations failed recently. Please try again later.",
            )

    def _reject(self, user_id: str, action: str, audit_message: str, user_message: str) -> None:
        logger.warning("Rate limit hit for user %s: %s", user_id, action)
        self._audit.log(
            category=AuditCategory.RATE_LIMIT,
            action=action,
            success=False,
            user_id=user_id,
            error_message=audit_message,
        )
        raise RateLimitExceededError(user_message)
