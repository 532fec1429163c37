from __future__ import annotations

import asyncio
import json
import random
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from typing import Any

import httpx
import structlog

from .contracts import CompletionChunk, CompletionResult, EnhancementResult
from .errors import AuthenticationError, CircuitBreakerOpenError, RateLimitError, UpstreamProtocolError
from .metrics import (
    upstream_circuit_breaker_events_total,
    upstream_request_latency_seconds,
    upstream_requests_total,
)

log = structlog.get_logger()

OPENAI_API_BASE = "https://api.openai.com/v1"


class OpenAIUpstream:
    """
    Client for an OpenAI-compatible completion service.

    Exposes the three calls the relay needs:
      - chat completion, single document
      - chat completion, incremental chunks
      - instruct-mode text completion (used by the prompt enhancer)

    Retries and the circuit breaker only ever act before a response body has
    been handed to the caller; a stream that fails midway is never replayed.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str = OPENAI_API_BASE,
        timeout_seconds: float = 60,
        max_attempts: int = 1,
        backoff_initial_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        circuit_breaker_failures: int = 5,
        circuit_breaker_reset_seconds: float = 30.0,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._base_url = base_url.rstrip("/")
        self._max_attempts = max(1, max_attempts)
        self._backoff_initial_seconds = max(0.0, backoff_initial_seconds)
        self._backoff_max_seconds = max(self._backoff_initial_seconds, backoff_max_seconds)
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep
        self._clock: Callable[[], float] = clock or time.monotonic

        self._cb_threshold = max(0, int(circuit_breaker_failures))
        self._cb_reset_seconds = max(0.0, float(circuit_breaker_reset_seconds))
        self._cb_failures = 0
        self._cb_open_until: float | None = None

    async def close(self) -> None:
        await self._client.aclose()

    def _circuit_remaining_seconds(self) -> int | None:
        if self._cb_open_until is None:
            return None
        remaining = self._cb_open_until - self._clock()
        if remaining <= 0:
            return None
        return int(remaining) + 1

    def _circuit_allow(self) -> None:
        if self._cb_threshold <= 0:
            return
        remaining = self._circuit_remaining_seconds()
        if remaining is None:
            return
        upstream_circuit_breaker_events_total.labels(event="short_circuit").inc()
        raise CircuitBreakerOpenError(retry_after_seconds=remaining)

    def _circuit_on_success(self) -> None:
        if self._cb_threshold <= 0:
            return
        self._cb_failures = 0
        self._cb_open_until = None

    def _circuit_on_failure(self) -> None:
        if self._cb_threshold <= 0:
            return
        self._cb_failures += 1
        if self._cb_failures < self._cb_threshold:
            return
        if self._cb_reset_seconds <= 0:
            return
        self._cb_open_until = self._clock() + self._cb_reset_seconds
        upstream_circuit_breaker_events_total.labels(event="open").inc()

    def _compute_backoff(self, attempt_index: int) -> float:
        # attempt_index: 0-based retry count (0 for first retry)
        base = float(min(self._backoff_max_seconds, self._backoff_initial_seconds * (2**attempt_index)))
        jitter = float(random.uniform(0.0, min(0.25, base * 0.1))) if base > 0 else 0.0
        return base + jitter

    def _preflight(self) -> dict[str, str]:
        self._circuit_allow()
        if not self.api_key:
            raise AuthenticationError("Missing OPENAI_API_KEY for upstream call.")
        return {"Authorization": f"Bearer {self.api_key}"}

    def _check_status(self, status_code: int, headers: Mapping[str, str], attempt: int) -> float | None:
        """Raise on a final failure; return the delay before the next attempt when retryable."""
        last_attempt = attempt >= self._max_attempts - 1
        if status_code in (401, 403):
            raise AuthenticationError("Upstream rejected credentials (check OPENAI_API_KEY).")
        if status_code == 429:
            retry_after = headers.get("retry-after")
            retry_seconds = int(retry_after) if retry_after and retry_after.isdigit() else None
            self._circuit_on_failure()
            if last_attempt:
                raise RateLimitError(retry_after_seconds=retry_seconds)
            return float(retry_seconds) if retry_seconds is not None else self._compute_backoff(attempt)
        if 500 <= status_code <= 599:
            self._circuit_on_failure()
            if last_attempt:
                raise UpstreamProtocolError(f"Upstream error {status_code}.")
            return self._compute_backoff(attempt)
        if status_code >= 400:
            raise UpstreamProtocolError(f"Upstream error {status_code}.")
        return None

    async def _on_transport_error(self, e: httpx.HTTPError, attempt: int) -> None:
        self._circuit_on_failure()
        if attempt >= self._max_attempts - 1:
            if isinstance(e, httpx.TimeoutException):
                raise UpstreamProtocolError("Upstream request timed out.") from e
            raise UpstreamProtocolError("Upstream request failed.") from e
        await self._sleep(self._compute_backoff(attempt))

    async def _post_json(self, path: str, payload: dict[str, Any], *, operation: str) -> dict[str, Any]:
        headers = self._preflight()
        url = f"{self._base_url}{path}"

        with upstream_request_latency_seconds.labels(operation=operation).time():
            for attempt in range(self._max_attempts):
                try:
                    resp = await self._client.post(url, headers=headers, json=payload)
                except httpx.HTTPError as e:
                    upstream_requests_total.labels(operation=operation, status="transport_error").inc()
                    await self._on_transport_error(e, attempt)
                    continue

                upstream_requests_total.labels(operation=operation, status=str(resp.status_code)).inc()
                if resp.status_code >= 400:
                    log.warning(
                        "openai_upstream_error_status",
                        operation=operation,
                        status_code=resp.status_code,
                        attempt=attempt + 1,
                        body=resp.text[:500],
                    )
                delay = self._check_status(resp.status_code, resp.headers, attempt)
                if delay is not None:
                    await self._sleep(delay)
                    continue
                break
            else:  # pragma: no cover
                raise UpstreamProtocolError("Upstream request failed after retries.")

        self._circuit_on_success()

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamProtocolError("Upstream returned a non-JSON body.") from e
        if not isinstance(data, dict):
            raise UpstreamProtocolError("Upstream returned a non-object JSON body.")
        return data

    async def create_chat_completion(self, payload: dict[str, Any]) -> CompletionResult:
        data = await self._post_json("/chat/completions", payload, operation="chat_completion")
        log.debug("openai_chat_completion_ok", model=payload.get("model"))
        return data

    async def create_text_completion(
        self,
        *,
        model: str,
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> EnhancementResult:
        data = await self._post_json(
            "/completions",
            {"model": model, "prompt": prompt, "max_tokens": max_tokens, "temperature": temperature},
            operation="text_completion",
        )

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise UpstreamProtocolError("Missing choices in upstream response.")
        first = choices[0]
        text = first.get("text") if isinstance(first, dict) else None
        if not isinstance(text, str):
            raise UpstreamProtocolError("Missing text in upstream response.")

        log.debug("openai_text_completion_ok", model=model, prompt_chars=len(prompt), text_chars=len(text))
        return EnhancementResult(text=text)

    async def stream_chat_completion(self, payload: dict[str, Any]) -> AsyncIterator[CompletionChunk]:
        headers = self._preflight()
        url = f"{self._base_url}/chat/completions"
        operation = "chat_completion_stream"

        for attempt in range(self._max_attempts):
            started = False
            try:
                async with self._client.stream("POST", url, headers=headers, json=payload) as resp:
                    upstream_requests_total.labels(operation=operation, status=str(resp.status_code)).inc()
                    if resp.status_code >= 400:
                        await resp.aread()
                        log.warning(
                            "openai_upstream_error_status",
                            operation=operation,
                            status_code=resp.status_code,
                            attempt=attempt + 1,
                            body=resp.text[:500],
                        )
                    delay = self._check_status(resp.status_code, resp.headers, attempt)
                    if delay is not None:
                        await self._sleep(delay)
                        continue

                    self._circuit_on_success()
                    started = True
                    async for chunk in _iter_sse_events(resp):
                        yield chunk
                    return
            except httpx.HTTPError as e:
                if started:
                    raise UpstreamProtocolError("Upstream stream interrupted.") from e
                upstream_requests_total.labels(operation=operation, status="transport_error").inc()
                await self._on_transport_error(e, attempt)

        raise UpstreamProtocolError("Upstream request failed after retries.")  # pragma: no cover


async def _iter_sse_events(resp: httpx.Response) -> AsyncIterator[CompletionChunk]:
    async for line in resp.aiter_lines():
        if not line or not line.startswith("data:"):
            continue
        raw = line[len("data:") :].strip()
        if not raw:
            continue
        if raw == "[DONE]":
            return
        try:
            event = json.loads(raw)
        except json.JSONDecodeError as e:
            raise UpstreamProtocolError("Failed to decode upstream SSE JSON.") from e
        if not isinstance(event, dict):
            raise UpstreamProtocolError("Upstream SSE event is not a JSON object.")
        if "error" in event and "choices" not in event:
            err = event["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise UpstreamProtocolError(f"Upstream stream error: {message}")
        yield event
