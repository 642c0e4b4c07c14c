import logging
from typing import Dict

from copilot.services.idempotency import IdempotencyService
from copilot.services.plan_service import PlanService

logger = logging.getLogger(__name__)


def run_sweep(plan_service: PlanService, idempotency_service: IdempotencyService) -> Dict[str, int]:
    """Expire stale pending plans and drop expired idempotency records."""
    expired_plans = plan_service.cleanup_expired_plans()
    removed_records = idempotency_service.cleanup_expired()
    logger.info("Sweep finished: %s plan(s) expired, %s idempotency record(s) removed", expired_plans, removed_records)
    return {"expired_plans": expired_plans, "removed_idempotency_records": removed_records}
