import logging
import math
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .config import Settings


logger = logging.getLogger("pubsub_proxy.access")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-DNS-Prefetch-Control": "off",
}


class FixedWindowRateLimiter:
    """Counts hits per key in fixed windows of ``window_seconds``."""

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self.lock = threading.Lock()
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._last_prune = clock()

    def hit(self, key: str) -> Tuple[bool, float]:
        """Record one request for ``key``; returns (allowed, seconds until reset)."""
        with self.lock:
            now = self.clock()
            start, count = self._windows.get(key, (now, 0))
            if now - start >= self.window_seconds:
                start, count = now, 0
            count += 1
            self._windows[key] = (start, count)
            if now - self._last_prune >= self.window_seconds:
                self._prune(now)
                self._last_prune = now
            reset_in = max(0.0, start + self.window_seconds - now)
            return count <= self.max_requests, reset_in

    def _prune(self, now: float) -> None:
        stale = [k for k, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for k in stale:
            del self._windows[k]


class BodySizeLimitMiddleware:
    """Rejects requests whose body exceeds ``max_body_bytes`` with 413.

    Bodies without a Content-Length (chunked uploads) are buffered and counted
    as they arrive, then replayed to the app.
    """

    def __init__(self, app: ASGIApp, max_body_bytes: int):
        self.app = app
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        length = Headers(scope=scope).get("content-length")
        if length is not None and length.isdigit():
            if int(length) > self.max_body_bytes:
                await self._reject(scope, receive, send)
                return
            await self.app(scope, receive, send)
            return

        buffered: List[Message] = []
        received = 0
        while True:
            message = await receive()
            buffered.append(message)
            if message["type"] != "http.request":
                break
            received += len(message.get("body", b""))
            if received > self.max_body_bytes:
                await self._reject(scope, receive, send)
                return
            if not message.get("more_body", False):
                break

        async def replay() -> Message:
            if buffered:
                return buffered.pop(0)
            return await receive()

        await self.app(scope, replay, send)

    async def _reject(self, scope: Scope, receive: Receive, send: Send) -> None:
        logger.warning("Rejected request body over %d bytes on %s", self.max_body_bytes, scope.get("path"))
        response = JSONResponse(status_code=413, content={"error": "Request body too large"})
        await response(scope, receive, send)


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _limit_message(window_seconds: float) -> str:
    minutes = max(1, int(math.ceil(window_seconds / 60)))
    return f"Too many requests from this IP, please try again after {minutes} minutes"


def install_middleware(
    app: FastAPI,
    settings: Settings,
    limiter: Optional[FixedWindowRateLimiter] = None,
    limited_prefix: str = "/api/publish",
) -> FixedWindowRateLimiter:
    if limiter is None:
        limiter = FixedWindowRateLimiter(settings.rate_limit_max, settings.rate_limit_window_seconds)
    limit_message = _limit_message(limiter.window_seconds)

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        if request.url.path.startswith(limited_prefix):
            allowed, reset_in = limiter.hit(_client_key(request))
            if not allowed:
                logger.warning("Rate limit exceeded for %s on %s", _client_key(request), request.url.path)
                return JSONResponse(
                    status_code=429,
                    content={"error": limit_message},
                    headers={"Retry-After": str(int(math.ceil(reset_in)))},
                )
        return await call_next(request)

    app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=settings.max_body_bytes)

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            '%s "%s %s" %d %.1fms',
            _client_key(request),
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return limiter
