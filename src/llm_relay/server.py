from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Awaitable
from contextlib import asynccontextmanager
from typing import TypeVar

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .config import RelayConfig
from .contracts import CompletionRequest
from .enhancer import PromptEnhancer
from .errors import RelayError, RequestTimeoutError, retry_after_of
from .http_security import install_middlewares, request_id_of
from .logging import configure_logging, summarize_messages
from .metrics import maybe_start_metrics, server_errors_total, server_request_latency_seconds, server_requests_total
from .openai_compat import make_openai_error_response, normalize_request
from .openai_upstream import OpenAIUpstream
from .relay import CompletionRelay
from .streaming import SSE_HEADERS, prime_stream, relay_event_stream, with_deadlines

log = structlog.get_logger()

T = TypeVar("T")

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
ENHANCED_CHAT_COMPLETIONS_PATH = "/v1/enhanced/chat/completions"


def build_upstream(cfg: RelayConfig) -> OpenAIUpstream:
    return OpenAIUpstream(
        api_key=cfg.openai_api_key,
        base_url=cfg.openai_base_url,
        timeout_seconds=cfg.upstream_timeout_seconds,
        max_attempts=cfg.upstream_max_attempts,
        backoff_initial_seconds=cfg.upstream_backoff_initial_seconds,
        backoff_max_seconds=cfg.upstream_backoff_max_seconds,
        circuit_breaker_failures=cfg.upstream_circuit_breaker_failures,
        circuit_breaker_reset_seconds=cfg.upstream_circuit_breaker_reset_seconds,
    )


def create_app(cfg: RelayConfig | None = None, upstream: OpenAIUpstream | None = None):
    cfg = cfg or RelayConfig()
    configure_logging(level=cfg.log_level, fmt=cfg.log_format, secrets=cfg.secrets())
    upstream = upstream or build_upstream(cfg)
    relay = CompletionRelay(upstream, cfg)
    enhancer = PromptEnhancer(
        upstream,
        model=cfg.enhancement_model,
        max_tokens=cfg.enhancement_max_tokens,
        temperature=cfg.enhancement_temperature,
    )

    def _observe(path: str, status_code: int, started_at: float) -> None:
        server_requests_total.labels(path=path, status=str(status_code)).inc()
        server_request_latency_seconds.labels(path=path).observe(max(0.0, time.monotonic() - started_at))

    def _error_response(request: Request, exc: Exception, *, status_code: int, type: str, message: str):
        server_errors_total.labels(type=type).inc()
        server_requests_total.labels(path=request.url.path, status=str(status_code)).inc()
        headers = {}
        retry_after = retry_after_of(exc)
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
        return JSONResponse(
            status_code=status_code,
            content=make_openai_error_response(
                message=message,
                type=type,
                code=request_id_of(request),
            ).model_dump(),
            headers=headers,
        )

    async def _with_deadline(awaitable: Awaitable[T]) -> T:
        timeout = max(0.0, float(cfg.chat_completions_timeout_seconds or 0)) or None
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError("Request timed out.") from e

    async def _read_request(request: Request) -> CompletionRequest:
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        req = normalize_request(payload, dropped_fields=cfg.dropped_fields)
        log.debug(
            "inbound_request",
            path=request.url.path,
            model=req.model,
            stream=req.stream,
            messages=summarize_messages(req.messages),
            extra_keys=sorted(req.extra),
        )
        return req

    async def _deliver(request: Request, req: CompletionRequest, *, path: str, started_at: float):
        if req.stream:
            chunks = with_deadlines(
                relay.stream(req),
                idle_timeout_seconds=cfg.chat_completions_stream_idle_timeout_seconds,
                total_timeout_seconds=cfg.chat_completions_stream_total_timeout_seconds,
            )
            primed = await prime_stream(chunks)
            body = relay_event_stream(
                primed,
                done_marker=cfg.stream_done_marker,
                error_frame=cfg.stream_error_frame,
                request_id=request_id_of(request),
            )
            _observe(path, 200, started_at)
            return StreamingResponse(
                body,
                media_type="text/event-stream",
                headers={"Content-Type": "text/event-stream", **SSE_HEADERS},
            )

        result = await _with_deadline(relay.complete(req))
        _observe(path, 200, started_at)
        return JSONResponse(status_code=200, content=result)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
        try:
            yield
        finally:
            await upstream.close()

    app = FastAPI(
        title="llm-relay",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if cfg.enable_api_docs else None,
        redoc_url="/redoc" if cfg.enable_api_docs else None,
        openapi_url="/openapi.json" if cfg.enable_api_docs else None,
    )
    install_middlewares(app, cfg=cfg)

    @app.exception_handler(RequestTimeoutError)
    async def _timeout_error_handler(request: Request, exc: RequestTimeoutError):
        log.warning("request_timed_out", path=request.url.path)
        return _error_response(
            request, exc, status_code=504, type=exc.error_type, message=str(exc) or "Request timed out."
        )

    @app.exception_handler(RelayError)
    async def _relay_error_handler(request: Request, exc: RelayError):
        log.warning("relay_error", path=request.url.path, error_type=exc.error_type, error=str(exc))
        return _error_response(request, exc, status_code=500, type=exc.error_type, message=str(exc))

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception):
        log.exception("unhandled_error", path=request.url.path)
        return _error_response(request, exc, status_code=500, type="api_error", message="Internal server error.")

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post(CHAT_COMPLETIONS_PATH)
    async def chat_completions(request: Request):
        started_at = time.monotonic()
        req = await _read_request(request)
        return await _deliver(request, req, path=CHAT_COMPLETIONS_PATH, started_at=started_at)

    @app.post(ENHANCED_CHAT_COMPLETIONS_PATH)
    async def enhanced_chat_completions(request: Request):
        started_at = time.monotonic()
        req = await _read_request(request)
        # The main call depends on the rewritten prompt, so this completes first.
        enhanced = await _with_deadline(enhancer.enhance(req))
        return await _deliver(request, enhanced, path=ENHANCED_CHAT_COMPLETIONS_PATH, started_at=started_at)

    return app


app = create_app()


def main() -> None:  # pragma: no cover
    try:
        import uvicorn
    except ImportError as e:
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("llm_relay.server:app", host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    main()
