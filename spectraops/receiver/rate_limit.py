"""In-memory fixed-window rate limiting keyed by client address."""

import asyncio
import math
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from prometheus_client import Counter
from starlette.middleware.base import BaseHTTPMiddleware

from ..errors import RateLimitExceeded

logger = structlog.get_logger(__name__)

RATE_LIMITED = Counter(
    "spectraops_rate_limited_requests_total",
    "Requests rejected by the rate limiter",
)


@dataclass
class WindowRecord:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one hit, with the values reported in response headers."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


class RateLimiter:
    """
    Fixed-window request counter per client.

    Single-process and best-effort: counters live in this process only and
    reset on restart. Deployments with several instances need a shared
    counter store instead.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._records: Dict[str, WindowRecord] = {}
        self._lock = Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    def hit(self, client_id: str) -> RateLimitDecision:
        """Count one request from ``client_id`` and decide whether it may proceed."""
        now = self._clock()

        with self._lock:
            record = self._records.get(client_id)
            if record is None or record.reset_at <= now:
                record = WindowRecord(count=0, reset_at=now + self.window_seconds)
                self._records[client_id] = record

            record.count += 1
            count, reset_at = record.count, record.reset_at

        return RateLimitDecision(
            allowed=count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_at=reset_at,
            retry_after=max(0, math.ceil(reset_at - now)),
        )

    def sweep(self) -> int:
        """Drop records whose window has expired. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [key for key, rec in self._records.items() if rec.reset_at <= now]
            for key in stale:
                del self._records[key]
        return len(stale)

    @property
    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._records)

    async def start_sweeper(self, interval_seconds: float = 300.0) -> None:
        """Start the background task that purges stale records."""
        if self._sweep_task is not None:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval_seconds))

    async def stop_sweeper(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                removed = self.sweep()
                if removed:
                    logger.debug("rate_limit_records_swept", removed=removed)
            except Exception as e:
                logger.error("rate_limit_sweep_failed", error=str(e))


def client_address(request: Request, trust_proxy: bool = False) -> str:
    """Get client identifier from request."""
    if trust_proxy:
        # First hop is the original client when behind a trusted proxy
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

    if request.client:
        return request.client.host

    return "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects over-limit requests with 429 and reports quota headers on every response."""

    def __init__(self, app, limiter: RateLimiter, trust_proxy: bool = False):
        super().__init__(app)
        self.limiter = limiter
        self.trust_proxy = trust_proxy

    async def dispatch(self, request: Request, call_next):
        decision = self.limiter.hit(client_address(request, self.trust_proxy))

        if not decision.allowed:
            RATE_LIMITED.inc()
            exc = RateLimitExceeded(reset_at=decision.reset_at)
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_dict(),
                headers={**decision.headers, "Retry-After": str(decision.retry_after)},
            )

        request.state.rate_limit_headers = decision.headers
        response = await call_next(request)
        response.headers.update(decision.headers)
        return response
