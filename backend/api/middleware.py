# api/middleware.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — RATE LIMITING
# ============================================================================
# Fixed-window request counting per client address and route prefix.
#
# RULES:
# - /webhooks/ and /api/ have separate limits and windows
# - Other paths (/health, /metrics, docs) are never limited
# - Over the limit: 429 with Retry-After, nothing reaches the route
# - Every limited response carries X-RateLimit-Limit/Remaining/Reset
# ============================================================================

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from settings import RateLimitConfig

logger = structlog.get_logger(component="rate_limit")

# Expired windows are swept once the table grows past this
PRUNE_THRESHOLD = 10_000


@dataclass(frozen=True)
class RateLimitRule:
    prefix: str
    max_requests: int
    window_seconds: float
    message: str


def rules_from_config(config: RateLimitConfig) -> List[RateLimitRule]:
    return [
        RateLimitRule(
            prefix="/webhooks/",
            max_requests=config.webhook_max_requests,
            window_seconds=config.webhook_window_seconds,
            message="Webhook rate limit exceeded",
        ),
        RateLimitRule(
            prefix="/api/",
            max_requests=config.api_max_requests,
            window_seconds=config.api_window_seconds,
            message="Too many requests",
        ),
    ]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory rate limiting per client address.

    Counts live in process memory, so each worker enforces its own limit.
    """

    def __init__(
        self,
        app: ASGIApp,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(app)
        self.config = config or RateLimitConfig()
        self.rules = rules_from_config(self.config)
        self._clock = clock
        # (prefix, client) -> (window start, count)
        self._windows: Dict[Tuple[str, str], Tuple[float, int]] = {}

    def _rule_for(self, path: str) -> Optional[RateLimitRule]:
        for rule in self.rules:
            if path.startswith(rule.prefix):
                return rule
        return None

    def _prune(self, now: float) -> None:
        windows = {rule.prefix: rule.window_seconds for rule in self.rules}
        self._windows = {
            key: (started, count)
            for key, (started, count) in self._windows.items()
            if now - started < windows.get(key[0], 0)
        }

    def _hit(self, rule: RateLimitRule, client: str) -> Tuple[int, float]:
        """Count a request. Returns (count in window, seconds until reset)."""
        now = self._clock()
        key = (rule.prefix, client)

        started, count = self._windows.get(key, (now, 0))
        if now - started >= rule.window_seconds:
            started, count = now, 0

        count += 1
        self._windows[key] = (started, count)

        if len(self._windows) > PRUNE_THRESHOLD:
            self._prune(now)

        return count, max(0.0, rule.window_seconds - (now - started))

    async def dispatch(self, request: Request, call_next) -> Response:
        rule = self._rule_for(request.url.path)
        if not self.config.enabled or rule is None:
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        count, reset_in = self._hit(rule, client)
        reset_seconds = math.ceil(reset_in)
        headers = {
            "X-RateLimit-Limit": str(rule.max_requests),
            "X-RateLimit-Remaining": str(max(0, rule.max_requests - count)),
            "X-RateLimit-Reset": str(reset_seconds),
        }

        if count > rule.max_requests:
            logger.warning(
                "rate_limit_exceeded",
                path=request.url.path,
                client=client,
                limit=rule.max_requests,
                retry_after=reset_seconds,
            )
            return JSONResponse(
                status_code=429,
                content={"error": rule.message, "retryAfter": reset_seconds},
                headers={**headers, "Retry-After": str(reset_seconds)},
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response


__all__ = ["RateLimitMiddleware", "RateLimitRule", "rules_from_config"]
