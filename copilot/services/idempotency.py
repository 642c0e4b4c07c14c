"""
Per-tool execution deduplication keyed by (tenant, tool, caller-supplied key).
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from .errors import IdempotencyConflictError
from .models import IDEMPOTENCY_TTL_HOURS, IdempotencyRecord, IdempotencyStatus, utcnow
from .ports import IdempotencyStorePort
from .tooling import ToolResult

logger = logging.getLogger(__name__)


def compute_request_hash(params: Mapping[str, Any]) -> str:
    """Hash of the parameter set; key order does not matter."""
    serialized = json.dumps(params, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


@dataclass
class IdempotencyCheck:
    is_idempotent: bool
    existing_response: Optional[Dict[str, Any]] = None
    idempotency_id: Optional[str] = None


@dataclass
class IdempotentExecution:
    result: ToolResult
    was_idempotent: bool
    idempotency_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.result.success

    @property
    def data(self) -> Any:
        return self.result.data

    @property
    def error(self) -> Optional[str]:
        return self.result.error


def result_from_response(response: Mapping[str, Any]) -> ToolResult:
    return ToolResult(
        success=bool(response.get("success")),
        data=response.get("data"),
        error=response.get("error"),
        error_code=response.get("error_code"),
        affected_entities=list(response.get("affected_entities") or []),
    )


class IdempotencyService:
    def __init__(self, store: IdempotencyStorePort, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def check(self, user_id: str, tool_name: str, idempotency_key: str, params: Mapping[str, Any]) -> IdempotencyCheck:
        try:
            record = self._store.find(user_id, tool_name, idempotency_key)
        except Exception as exc:
            logger.warning("Idempotency lookup failed for %s/%s: %s", tool_name, idempotency_key, exc)
            return IdempotencyCheck(is_idempotent=False)

        if record is None:
            return IdempotencyCheck(is_idempotent=False)

        if record.expires_at < self._clock():
            try:
                self._store.delete(record.id)
            except Exception as exc:
                logger.warning("Failed to delete expired idempotency record %s: %s", record.id, exc)
            return IdempotencyCheck(is_idempotent=False)

        if record.request_hash != compute_request_hash(params):
            raise IdempotencyConflictError(
                f"Idempotency key '{idempotency_key}' was already used with different parameters",
                details={"tool": tool_name, "idempotency_id": record.id},
            )

        response = dict(record.response)
        response["entity_ids"] = list(record.entity_ids)
        logger.info("Idempotent replay for %s/%s", tool_name, idempotency_key)
        return IdempotencyCheck(is_idempotent=True, existing_response=response, idempotency_id=record.id)

    def record(
        self,
        user_id: str,
        *,
        tool_name: str,
        idempotency_key: str,
        params: Mapping[str, Any],
        response: Mapping[str, Any],
        entity_ids: Optional[Iterable[str]] = None,
        status: IdempotencyStatus = IdempotencyStatus.SUCCESS,
    ) -> str:
        record = IdempotencyRecord(
            user_id=user_id,
            tool_name=tool_name,
            idempotency_key=idempotency_key,
            request_hash=compute_request_hash(params),
            response=dict(response),
            entity_ids=[str(entity_id) for entity_id in (entity_ids or [])],
            status=IdempotencyStatus(status),
            expires_at=self._clock() + timedelta(hours=IDEMPOTENCY_TTL_HOURS),
        )
        return self._store.upsert(record)

    def execute_with_idempotency(
        self,
        user_id: str,
        tool_name: str,
        idempotency_key: str,
        params: Mapping[str, Any],
        executor: Callable[[], ToolResult],
    ) -> IdempotentExecution:
        check = self.check(user_id, tool_name, idempotency_key, params)
        if check.is_idempotent and check.existing_response is not None:
            return IdempotentExecution(
                result=result_from_response(check.existing_response),
                was_idempotent=True,
                idempotency_id=check.idempotency_id,
            )
        return self.run_and_record(user_id, tool_name, idempotency_key, params, executor)

    def run_and_record(
        self,
        user_id: str,
        tool_name: str,
        idempotency_key: str,
        params: Mapping[str, Any],
        executor: Callable[[], ToolResult],
    ) -> IdempotentExecution:
        """Run ``executor`` after a miss and store its outcome under the key."""
        result = executor()
        status = IdempotencyStatus.SUCCESS if result.success else IdempotencyStatus.FAILED
        record_id: Optional[str] = None
        try:
            record_id = self.record(
                user_id,
                tool_name=tool_name,
                idempotency_key=idempotency_key,
                params=params,
                response=result.to_dict(),
                entity_ids=result.entity_ids,
                status=status,
            )
        except Exception as exc:
            logger.warning("Failed to record idempotency for %s/%s: %s", tool_name, idempotency_key, exc)
        return IdempotentExecution(result=result, was_idempotent=False, idempotency_id=record_id)

    def cleanup_expired(self) -> int:
        try:
            count = self._store.delete_expired(self._clock())
        except Exception as exc:
            logger.warning("Idempotency cleanup failed: %s", exc)
            return 0
        if count:
            logger.info("Removed %s expired idempotency record(s)", count)
        return count
