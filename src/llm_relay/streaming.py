from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any, TypeVar

import structlog

from .contracts import CompletionChunk
from .errors import RelayError, RequestTimeoutError
from .metrics import stream_chunks_total, stream_failures_total
from .openai_compat import make_openai_error_response

log = structlog.get_logger()

T = TypeVar("T")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def sse_encode(data: str) -> bytes:
    return f"data: {data}\n\n".encode("utf-8")


def sse_json(obj: Any) -> bytes:
    return sse_encode(json.dumps(obj, separators=(",", ":"), ensure_ascii=False))


def sse_error_frame(exc: RelayError, *, request_id: str | None = None) -> bytes:
    body = make_openai_error_response(message=str(exc), type=exc.error_type, code=request_id)
    return sse_json(body.model_dump())


async def _aclose(it: AsyncIterator[Any]) -> None:
    aclose = getattr(it, "aclose", None)
    if callable(aclose):
        await aclose()


async def with_deadlines(
    it: AsyncIterator[T],
    *,
    idle_timeout_seconds: float = 0,
    total_timeout_seconds: float = 0,
) -> AsyncIterator[T]:
    """Re-yield ``it`` but fail with RequestTimeoutError when it stalls or runs too long."""
    try:
        loop = asyncio.get_running_loop()
        total_deadline = max(0.0, float(total_timeout_seconds or 0))
        idle_timeout = max(0.0, float(idle_timeout_seconds or 0))
        started = loop.time()

        while True:
            remaining_total: float | None = None
            if total_deadline > 0:
                remaining_total = total_deadline - (loop.time() - started)
                if remaining_total <= 0:
                    raise RequestTimeoutError("Streaming request timed out.")

            timeout: float | None = None
            if idle_timeout > 0:
                timeout = idle_timeout
            if remaining_total is not None:
                timeout = remaining_total if timeout is None else min(timeout, remaining_total)

            try:
                item = await asyncio.wait_for(anext(it), timeout=timeout)
            except StopAsyncIteration:
                break
            except asyncio.TimeoutError as e:
                raise RequestTimeoutError("Streaming request timed out.") from e
            yield item
    finally:
        await _aclose(it)


async def _chain_first(first: T, rest: AsyncIterator[T]) -> AsyncIterator[T]:
    try:
        yield first
        async for item in rest:
            yield item
    finally:
        await _aclose(rest)


async def _empty() -> AsyncIterator[Any]:
    return
    yield  # pragma: no cover


async def prime_stream(it: AsyncIterator[T]) -> AsyncIterator[T]:
    """
    Wait for the first item before handing the stream to the response.

    Anything that fails while the upstream stream is being opened raises here,
    while a normal HTTP error status can still be sent.
    """
    try:
        first = await anext(it)
    except StopAsyncIteration:
        return _empty()
    return _chain_first(first, it)


async def relay_event_stream(
    chunks: AsyncIterator[CompletionChunk],
    *,
    done_marker: bool = False,
    error_frame: bool = True,
    request_id: str | None = None,
) -> AsyncIterator[bytes]:
    """One ``data:`` frame per chunk, in arrival order, written as soon as it arrives."""
    relayed = 0
    try:
        async for chunk in chunks:
            relayed += 1
            stream_chunks_total.inc()
            yield sse_json(chunk)
    except RelayError as e:
        stream_failures_total.inc()
        log.warning("stream_relay_failed", chunks=relayed, error=str(e), error_type=e.error_type)
        if not error_frame:
            raise
        yield sse_error_frame(e, request_id=request_id)
        return
    finally:
        await _aclose(chunks)

    if done_marker:
        yield sse_encode("[DONE]")
