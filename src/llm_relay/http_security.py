from __future__ import annotations

import asyncio
import re
import uuid

import structlog

from .openai_compat import make_openai_error_response

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")

RELAY_PATH_PREFIX = "/v1/"


def coerce_request_id(value: str | None) -> str:
    if value and _REQUEST_ID_RE.fullmatch(value):
        return value
    return uuid.uuid4().hex


def request_id_of(request) -> str | None:
    return getattr(getattr(request, "state", None), "request_id", None)


def _is_relay_path(path: str) -> bool:
    return path.startswith(RELAY_PATH_PREFIX)


def install_middlewares(app, *, cfg) -> None:
    """Install request-id, header, body-size and concurrency middleware, plus optional hosts/CORS."""
    from fastapi.responses import JSONResponse
    from starlette.middleware.base import BaseHTTPMiddleware
    from starlette.requests import Request

    def _reject(request: Request, *, status_code: int, message: str, type: str):
        return JSONResponse(
            status_code=status_code,
            content=make_openai_error_response(
                message=message,
                type=type,
                code=request_id_of(request),
            ).model_dump(),
        )

    class RequestIdMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            request_id = coerce_request_id(request.headers.get("x-request-id"))
            request.state.request_id = request_id
            structlog.contextvars.bind_contextvars(request_id=request_id)
            try:
                response = await call_next(request)
            finally:
                structlog.contextvars.clear_contextvars()
            response.headers.setdefault("X-Request-Id", request_id)
            return response

    class SecurityHeadersMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            response = await call_next(request)
            response.headers.setdefault("X-Content-Type-Options", "nosniff")
            response.headers.setdefault("X-Frame-Options", "DENY")
            response.headers.setdefault("Referrer-Policy", "no-referrer")
            response.headers.setdefault("Cross-Origin-Resource-Policy", "same-site")
            if not cfg.enable_api_docs:
                response.headers.setdefault("X-Robots-Tag", "noindex, nofollow")
            # Event streams already carry their own no-cache header.
            if _is_relay_path(request.url.path):
                response.headers.setdefault("Cache-Control", "no-store")
            return response

    class MaxBodySizeMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            limit = int(cfg.max_request_body_bytes or 0)
            if limit > 0 and request.method == "POST" and _is_relay_path(request.url.path):
                content_length = request.headers.get("content-length")
                if content_length and content_length.isdigit() and int(content_length) > limit:
                    return _reject(
                        request, status_code=413, message="Request body too large.", type="invalid_request_error"
                    )
                body = await request.body()
                if len(body) > limit:
                    return _reject(
                        request, status_code=413, message="Request body too large.", type="invalid_request_error"
                    )
            return await call_next(request)

    class ConcurrencyLimitMiddleware:
        """Plain ASGI so a permit covers the whole response body, event streams included."""

        def __init__(self, app_):
            self.app = app_
            self._sem = asyncio.Semaphore(max(1, int(cfg.max_inflight_requests or 1)))

        async def __call__(self, scope, receive, send):
            if scope["type"] != "http" or not _is_relay_path(scope["path"]):
                await self.app(scope, receive, send)
                return
            if self._sem.locked():
                response = _reject(
                    Request(scope), status_code=429, message="Server is busy. Try again later.", type="rate_limit_error"
                )
                await response(scope, receive, send)
                return
            await self._sem.acquire()
            try:
                await self.app(scope, receive, send)
            finally:
                self._sem.release()

    app.add_middleware(MaxBodySizeMiddleware)
    app.add_middleware(ConcurrencyLimitMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    # Outermost, so X-Request-Id is set even when inner middleware short-circuits.
    app.add_middleware(RequestIdMiddleware)

    if cfg.allowed_hosts:
        from starlette.middleware.trustedhost import TrustedHostMiddleware

        app.add_middleware(TrustedHostMiddleware, allowed_hosts=list(cfg.allowed_hosts))

    if cfg.cors_allow_origins:
        from fastapi.middleware.cors import CORSMiddleware

        if cfg.cors_allow_credentials and "*" in cfg.cors_allow_origins:
            raise ValueError("CORS_ALLOW_ORIGINS cannot include '*' when CORS_ALLOW_CREDENTIALS=true.")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cfg.cors_allow_origins),
            allow_credentials=cfg.cors_allow_credentials,
            allow_methods=["POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-Request-Id"],
            max_age=600,
        )
