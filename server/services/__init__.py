from .ai_gateway_service import AIGatewayService
from .business_tools import build_business_tools
from .maintenance import run_sweep
from .rate_limiter import RateLimiter

__all__ = [
    "AIGatewayService",
    "RateLimiter",
    "build_business_tools",
    "run_sweep",
]
