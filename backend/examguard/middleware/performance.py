import time
import logging
import re
import uuid
from collections import Counter
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Callable, Optional, Tuple
import psutil

from ..core.cache import cache

perf_logger = logging.getLogger("performance")

SLOW_REQUESTS_KEY = "slow_requests"

SESSION_ROUTE = re.compile(r"^/api/v1/sessions/(?P<session_id>[^/]+)(?:/(?P<action>[a-z]+))?")
INGEST_ACTIONS = frozenset({"events", "observations", "heartbeat"})


def classify_route(method: str, path: str) -> Tuple[str, Optional[str]]:
    """Group a request as ingest/session/other and pull out the session id"""
    match = SESSION_ROUTE.match(path)
    if match is None:
        return "other", None
    if method == "POST" and match.group("action") in INGEST_ACTIONS:
        return "ingest", match.group("session_id")
    return "session", match.group("session_id")


class PerformanceMiddleware(BaseHTTPMiddleware):
    """Request timing per route group; detector-facing ingest calls get a tighter budget"""

    def __init__(self, app, slow_request_threshold: float = 1.0, ingest_slow_request_threshold: float = 0.2):
        super().__init__(app)
        self.thresholds = {
            "ingest": ingest_slow_request_threshold,
            "session": slow_request_threshold,
            "other": slow_request_threshold,
        }
        self.request_counts: Counter = Counter()
        self.slow_counts: Counter = Counter()
        self.process = psutil.Process()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        group, session_id = classify_route(request.method, request.url.path)
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        self.request_counts[group] += 1

        start_time = time.perf_counter()
        rss_before = self.process.memory_info().rss
        try:
            response = await call_next(request)
        except Exception as e:
            perf_logger.error(f"{request_id} {request.method} {request.url.path} failed after "
                              f"{time.perf_counter() - start_time:.3f}s: {e}")
            raise

        elapsed = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        response.headers["X-Request-ID"] = request_id

        threshold = self.thresholds[group]
        if elapsed > threshold:
            self.slow_counts[group] += 1
            perf_logger.warning(
                f"Slow {group} request {request_id}: {request.method} {request.url.path} "
                f"-> {response.status_code} in {elapsed:.3f}s (budget {threshold}s)"
            )
            await self._store_slow_request({
                'request_id': request_id,
                'group': group,
                'session_id': session_id,
                'method': request.method,
                'path': request.url.path,
                'status_code': response.status_code,
                'response_time': round(elapsed, 3),
                'rss_delta_mb': round((self.process.memory_info().rss - rss_before) / (1024 * 1024), 2),
                'timestamp': time.time(),
            })
        return response

    async def _store_slow_request(self, record: dict):
        slow_requests = await cache.aget(SLOW_REQUESTS_KEY) or []
        slow_requests.append(record)
        await cache.aset(SLOW_REQUESTS_KEY, slow_requests[-100:], ttl=86400)
