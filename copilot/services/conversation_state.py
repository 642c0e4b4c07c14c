"""
Per-conversation assistant state, persisted inside the conversation metadata.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from .models import from_iso, plan_expiry_from, to_iso, utcnow
from .ports import ConversationStatePort

logger = logging.getLogger(__name__)

STATE_KEY = "assistant_state"
STATE_SCHEMA_VERSION = 1


class ConversationState(str, Enum):
    IDLE = "IDLE"
    PLANNING = "PLANNING"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    EXECUTING = "EXECUTING"


VALID_TRANSITIONS: Dict[ConversationState, frozenset] = {
    ConversationState.IDLE: frozenset(
        {ConversationState.IDLE, ConversationState.PLANNING, ConversationState.AWAITING_CONFIRMATION}
    ),
    ConversationState.PLANNING: frozenset(
        {ConversationState.PLANNING, ConversationState.AWAITING_CONFIRMATION, ConversationState.IDLE}
    ),
    ConversationState.AWAITING_CONFIRMATION: frozenset(
        {
            ConversationState.AWAITING_CONFIRMATION,
            ConversationState.EXECUTING,
            ConversationState.PLANNING,
            ConversationState.IDLE,
        }
    ),
    ConversationState.EXECUTING: frozenset({ConversationState.EXECUTING, ConversationState.IDLE}),
}


@dataclass
class PendingPlanDraft:
    action: str
    tool: str
    params: Dict[str, Any]
    collected_fields: Dict[str, Any]
    missing_fields: List[str]
    created_at: datetime
    expires_at: datetime
    plan_id: Optional[str] = None
    # Bumped whenever a proposed plan is discarded so the next proposal gets a fresh key.
    revision: int = 0

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "tool": self.tool,
            "params": dict(self.params),
            "collected_fields": dict(self.collected_fields),
            "missing_fields": list(self.missing_fields),
            "created_at": to_iso(self.created_at),
            "expires_at": to_iso(self.expires_at),
            "plan_id": self.plan_id,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PendingPlanDraft":
        created_at = from_iso(payload.get("created_at"))
        expires_at = from_iso(payload.get("expires_at"))
        if created_at is None or expires_at is None:
            raise ValueError("pending plan is missing its timestamps")
        tool = str(payload.get("tool") or payload.get("action") or "")
        return cls(
            action=str(payload.get("action") or tool),
            tool=tool,
            params=dict(payload.get("params") or {}),
            collected_fields=dict(payload.get("collected_fields") or {}),
            missing_fields=[str(item) for item in payload.get("missing_fields") or []],
            created_at=created_at,
            expires_at=expires_at,
            plan_id=payload.get("plan_id"),
            revision=int(payload.get("revision") or 0),
        )


@dataclass
class ConversationStateData:
    state: ConversationState = ConversationState.IDLE
    pending_plan: Optional[PendingPlanDraft] = None
    last_tool_result: Optional[Dict[str, Any]] = None
    billing_preview_id: Optional[str] = None
    updated_at: Optional[datetime] = None
    version: int = STATE_SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "state": self.state.value,
            "pending_plan": self.pending_plan.to_dict() if self.pending_plan else None,
            "last_tool_result": self.last_tool_result,
            "billing_preview_id": self.billing_preview_id,
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def decode(cls, payload: Any) -> "ConversationStateData":
        """Decode stored state; anything unrecognised falls back to the default state."""
        if not isinstance(payload, Mapping) or payload.get("version") != STATE_SCHEMA_VERSION:
            return cls()
        try:
            state = ConversationState(payload.get("state"))
        except ValueError:
            return cls()

        pending_plan = None
        raw_plan = payload.get("pending_plan")
        if isinstance(raw_plan, Mapping):
            try:
                pending_plan = PendingPlanDraft.from_dict(raw_plan)
            except (TypeError, ValueError) as exc:
                logger.warning("Discarding malformed pending plan: %s", exc)
                state = ConversationState.IDLE

        last_result = payload.get("last_tool_result")
        try:
            updated_at = from_iso(payload.get("updated_at"))
        except (TypeError, ValueError):
            updated_at = None
        return cls(
            state=state,
            pending_plan=pending_plan,
            last_tool_result=dict(last_result) if isinstance(last_result, Mapping) else None,
            billing_preview_id=payload.get("billing_preview_id"),
            updated_at=updated_at,
        )


_UNSET: Any = object()


class ConversationStateService:
    def __init__(self, store: ConversationStatePort, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    @staticmethod
    def is_valid_transition(current: ConversationState, target: ConversationState) -> bool:
        return target in VALID_TRANSITIONS.get(current, frozenset())

    def get_state(self, conversation_id: str) -> ConversationStateData:
        data = self._load(conversation_id)
        if data.pending_plan is not None and data.pending_plan.is_expired(self._clock()):
            logger.info("Pending plan expired for conversation %s", conversation_id)
            return self.set_state(conversation_id, ConversationState.IDLE, pending_plan=None)
        return data

    def set_state(
        self,
        conversation_id: str,
        state: ConversationState,
        *,
        pending_plan: Optional[PendingPlanDraft] = _UNSET,
        last_tool_result: Optional[Dict[str, Any]] = _UNSET,
        billing_preview_id: Optional[str] = _UNSET,
    ) -> ConversationStateData:
        current = self._load(conversation_id)
        if not self.is_valid_transition(current.state, state):
            logger.warning(
                "Unexpected state transition %s -> %s for conversation %s",
                current.state.value,
                state.value,
                conversation_id,
            )
        updated = ConversationStateData(
            state=state,
            pending_plan=current.pending_plan if pending_plan is _UNSET else pending_plan,
            last_tool_result=current.last_tool_result if last_tool_result is _UNSET else last_tool_result,
            billing_preview_id=current.billing_preview_id if billing_preview_id is _UNSET else billing_preview_id,
            updated_at=self._clock(),
        )
        self._save(conversation_id, updated)
        return updated

    def create_pending_plan(
        self,
        conversation_id: str,
        *,
        action: str,
        tool: str,
        params: Mapping[str, Any],
        collected_fields: Optional[Mapping[str, Any]] = None,
        missing_fields: Optional[List[str]] = None,
    ) -> ConversationStateData:
        now = self._clock()
        missing = list(missing_fields or [])
        draft = PendingPlanDraft(
            action=action,
            tool=tool,
            params=dict(params),
            collected_fields=dict(collected_fields if collected_fields is not None else params),
            missing_fields=missing,
            created_at=now,
            expires_at=plan_expiry_from(now),
        )
        state = ConversationState.PLANNING if missing else ConversationState.AWAITING_CONFIRMATION
        return self.set_state(conversation_id, state, pending_plan=draft)

    def update_pending_plan(
        self,
        conversation_id: str,
        *,
        collected_fields: Optional[Mapping[str, Any]] = None,
        missing_fields: Optional[List[str]] = None,
    ) -> ConversationStateData:
        current = self.get_state(conversation_id)
        draft = current.pending_plan
        if draft is None:
            return current
        if collected_fields:
            draft.collected_fields.update(collected_fields)
            draft.params.update(collected_fields)
        if missing_fields is not None:
            draft.missing_fields = list(missing_fields)
        state = ConversationState.PLANNING if draft.missing_fields else ConversationState.AWAITING_CONFIRMATION
        return self.set_state(conversation_id, state, pending_plan=draft)

    def attach_plan(self, conversation_id: str, plan_id: str, expires_at: datetime) -> ConversationStateData:
        """Link the draft to its persisted Plan so both share one expiry instant."""
        current = self.get_state(conversation_id)
        draft = current.pending_plan
        if draft is None:
            return current
        draft.plan_id = plan_id
        draft.expires_at = expires_at
        return self.set_state(conversation_id, ConversationState.AWAITING_CONFIRMATION, pending_plan=draft)

    def clear_pending_plan(self, conversation_id: str) -> ConversationStateData:
        return self.set_state(conversation_id, ConversationState.IDLE, pending_plan=None)

    def start_execution(self, conversation_id: str) -> ConversationStateData:
        return self.set_state(conversation_id, ConversationState.EXECUTING)

    def complete_execution(self, conversation_id: str, result: Mapping[str, Any]) -> ConversationStateData:
        return self.set_state(
            conversation_id,
            ConversationState.IDLE,
            pending_plan=None,
            last_tool_result=dict(result),
        )

    def store_billing_preview(self, conversation_id: str, preview_id: str) -> ConversationStateData:
        current = self.get_state(conversation_id)
        return self.set_state(conversation_id, current.state, billing_preview_id=preview_id)

    def get_billing_preview_id(self, conversation_id: str) -> Optional[str]:
        return self.get_state(conversation_id).billing_preview_id

    def _load(self, conversation_id: str) -> ConversationStateData:
        metadata = self._store.get_metadata(conversation_id) or {}
        return ConversationStateData.decode(metadata.get(STATE_KEY))

    def _save(self, conversation_id: str, data: ConversationStateData) -> None:
        metadata = dict(self._store.get_metadata(conversation_id) or {})
        metadata[STATE_KEY] = data.to_dict()
        self._store.save_metadata(conversation_id, metadata)
