import os
import sys

import pytest

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)
TESTS_DIR = os.path.dirname(__file__)
if TESTS_DIR not in sys.path:
    sys.path.insert(0, TESTS_DIR)

from storage.sqlite import database
from copilot.services.audit import AuditService
from copilot.services.conversation_state import ConversationStateService
from copilot.services.idempotency import IdempotencyService
from copilot.services.plan_service import PlanService
from copilot.services.tool_registry import ToolRegistry

from fakes import (
    FakeClock,
    InMemoryAuditStore,
    InMemoryConversationStore,
    InMemoryIdempotencyStore,
    InMemoryOwnership,
    InMemoryPlanStore,
)


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    db_path = tmp_path / "test_copilot.db"
    monkeypatch.setattr(database, "DB_PATH", db_path)
    return db_path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit_store():
    return InMemoryAuditStore()


@pytest.fixture
def audit_service(audit_store, clock):
    return AuditService(audit_store, clock=clock)


@pytest.fixture
def idempotency_store():
    return InMemoryIdempotencyStore()


@pytest.fixture
def idempotency_service(idempotency_store, clock):
    return IdempotencyService(idempotency_store, clock=clock)


@pytest.fixture
def registry(audit_service, idempotency_service):
    return ToolRegistry(audit_service, idempotency_service)


@pytest.fixture
def ownership():
    return InMemoryOwnership()


@pytest.fixture
def plan_store():
    return InMemoryPlanStore()


@pytest.fixture
def plan_service(plan_store, registry, audit_service, ownership, clock):
    return PlanService(plan_store, registry, audit_service, ownership, clock=clock)


@pytest.fixture
def conversation_store():
    return InMemoryConversationStore()


@pytest.fixture
def state_service(conversation_store, clock):
    return ConversationStateService(conversation_store, clock=clock)
