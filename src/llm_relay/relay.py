from __future__ import annotations

import time
from collections.abc import AsyncIterator
from typing import Any, Protocol

import structlog

from .config import RelayConfig
from .contracts import CompletionChunk, CompletionRequest, CompletionResult
from .errors import CompletionUpstreamError, MissingContextError, StreamingUpstreamError, UpstreamError
from .logging import summarize_messages

log = structlog.get_logger()

# Fields the relay owns; pass-through extras may not overwrite them.
RESERVED_FIELDS = frozenset({"model", "messages", "max_tokens", "temperature", "stream"})


class ChatCompletionClient(Protocol):
    async def create_chat_completion(self, payload: dict[str, Any]) -> CompletionResult: ...

    def stream_chat_completion(self, payload: dict[str, Any]) -> AsyncIterator[CompletionChunk]: ...


class CompletionRelay:
    def __init__(self, upstream: ChatCompletionClient, cfg: RelayConfig):
        self.upstream = upstream
        self.cfg = cfg

    def build_upstream_payload(self, request: CompletionRequest, *, stream: bool) -> dict[str, Any]:
        clobbered = sorted(k for k in request.extra if k in RESERVED_FIELDS)
        if clobbered:
            log.debug("relay_extra_reserved_ignored", keys=clobbered)

        payload: dict[str, Any] = {"model": request.model if request.model is not None else self.cfg.default_model}
        payload.update((k, v) for k, v in request.extra.items() if k not in RESERVED_FIELDS)
        payload["messages"] = request.messages
        payload["max_tokens"] = (
            request.max_tokens if request.max_tokens is not None else self.cfg.default_max_tokens
        )
        payload["temperature"] = (
            request.temperature if request.temperature is not None else self.cfg.default_temperature
        )
        payload["stream"] = stream
        return payload

    def _require_messages(self, request: CompletionRequest) -> None:
        if not request.messages:
            raise MissingContextError("messages must be a non-empty list.")

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self._require_messages(request)
        payload = self.build_upstream_payload(request, stream=False)
        log.info(
            "relay_request",
            mode="single",
            model=payload["model"],
            messages=summarize_messages(request.messages),
        )
        start = time.monotonic()
        try:
            result = await self.upstream.create_chat_completion(payload)
        except UpstreamError as e:
            log.warning("relay_completion_failed", model=payload["model"], error=str(e))
            raise CompletionUpstreamError(f"Completion request failed: {e}") from e
        log.info("relay_completion_ok", model=payload["model"], latency_seconds=time.monotonic() - start)
        return result

    async def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        self._require_messages(request)
        payload = self.build_upstream_payload(request, stream=True)
        log.info(
            "relay_request",
            mode="stream",
            model=payload["model"],
            messages=summarize_messages(request.messages),
        )
        chunks = self.upstream.stream_chat_completion(payload)
        count = 0
        try:
            async for chunk in chunks:
                count += 1
                yield chunk
        except UpstreamError as e:
            log.warning("relay_stream_failed", model=payload["model"], chunks=count, error=str(e))
            raise StreamingUpstreamError(f"Streaming completion failed after {count} chunk(s): {e}") from e
        finally:
            # Closes the upstream connection too when the caller goes away.
            aclose = getattr(chunks, "aclose", None)
            if callable(aclose):
                await aclose()
        log.info("relay_stream_done", model=payload["model"], chunks=count)
