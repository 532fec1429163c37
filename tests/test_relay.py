import pytest

from llm_relay.config import RelayConfig
from llm_relay.contracts import CompletionRequest
from llm_relay.errors import (
    CompletionUpstreamError,
    MissingContextError,
    RateLimitError,
    StreamingUpstreamError,
    UpstreamProtocolError,
)
from llm_relay.relay import CompletionRelay

HI = [{"role": "user", "content": "hi"}]


def _cfg(**kwargs):
    return RelayConfig(enable_metrics=False, **kwargs)


def test_payload_defaults_when_caller_omits_fields(make_upstream):
    relay = CompletionRelay(make_upstream(), _cfg())
    payload = relay.build_upstream_payload(CompletionRequest(messages=HI), stream=False)
    assert payload == {
        "model": "gpt-3.5-turbo",
        "messages": HI,
        "max_tokens": 150,
        "temperature": 0.7,
        "stream": False,
    }


def test_payload_keeps_explicit_values_including_zero_temperature(make_upstream):
    relay = CompletionRelay(make_upstream(), _cfg())
    req = CompletionRequest(model="gpt-4o", messages=HI, max_tokens=10, temperature=0.0)
    payload = relay.build_upstream_payload(req, stream=True)
    assert payload["model"] == "gpt-4o"
    assert payload["max_tokens"] == 10
    assert payload["temperature"] == 0.0
    assert payload["stream"] is True


def test_payload_merges_extra_but_never_lets_it_clobber_owned_fields(make_upstream):
    relay = CompletionRelay(make_upstream(), _cfg())
    req = CompletionRequest(
        messages=HI,
        extra={"top_p": 0.3, "user": "u-1", "messages": "nope", "model": "other", "stream": True},
    )
    payload = relay.build_upstream_payload(req, stream=False)
    assert payload["top_p"] == 0.3
    assert payload["user"] == "u-1"
    assert payload["messages"] == HI
    assert payload["model"] == "gpt-3.5-turbo"
    assert payload["stream"] is False


def test_payload_defaults_follow_config(make_upstream):
    relay = CompletionRelay(
        make_upstream(), _cfg(default_model="m-1", default_max_tokens=5, default_temperature=1.5)
    )
    payload = relay.build_upstream_payload(CompletionRequest(messages=HI), stream=False)
    assert (payload["model"], payload["max_tokens"], payload["temperature"]) == ("m-1", 5, 1.5)


@pytest.mark.asyncio
async def test_complete_returns_upstream_document_verbatim(make_upstream):
    result = {"id": "chatcmpl-9", "choices": [{"message": {"role": "assistant", "content": "yo"}}], "usage": {}}
    upstream = make_upstream(result=result)
    out = await CompletionRelay(upstream, _cfg()).complete(CompletionRequest(messages=HI, stream=False))
    assert out is result
    assert upstream.operations == ["chat_completion"]


@pytest.mark.asyncio
async def test_complete_wraps_upstream_failure(make_upstream):
    cause = RateLimitError(retry_after_seconds=3)
    upstream = make_upstream(chat_error=cause)
    with pytest.raises(CompletionUpstreamError) as exc:
        await CompletionRelay(upstream, _cfg()).complete(CompletionRequest(messages=HI))
    assert exc.value.__cause__ is cause


@pytest.mark.asyncio
async def test_complete_requires_messages(make_upstream):
    upstream = make_upstream()
    with pytest.raises(MissingContextError):
        await CompletionRelay(upstream, _cfg()).complete(CompletionRequest(messages=[]))
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_stream_yields_chunks_unchanged_and_in_order(make_upstream):
    chunks = [{"n": 1}, {"n": 2, "choices": []}, {"n": 3}]
    upstream = make_upstream(chunks=chunks)
    out = [c async for c in CompletionRelay(upstream, _cfg()).stream(CompletionRequest(messages=HI, stream=True))]
    assert out == chunks
    assert upstream.payload_of("chat_completion_stream")["stream"] is True
    assert upstream.stream_closed


@pytest.mark.asyncio
async def test_stream_wraps_mid_stream_failure_after_relaying_earlier_chunks(make_upstream):
    upstream = make_upstream(
        chunks=[{"n": 1}, {"n": 2}, {"n": 3}],
        stream_error=UpstreamProtocolError("Upstream stream interrupted."),
        stream_error_after=2,
    )
    seen = []
    with pytest.raises(StreamingUpstreamError):
        async for chunk in CompletionRelay(upstream, _cfg()).stream(CompletionRequest(messages=HI)):
            seen.append(chunk)
    assert seen == [{"n": 1}, {"n": 2}]


@pytest.mark.asyncio
async def test_stream_requires_messages_before_calling_upstream(make_upstream):
    upstream = make_upstream(chunks=[{"n": 1}])
    with pytest.raises(MissingContextError):
        async for _ in CompletionRelay(upstream, _cfg()).stream(CompletionRequest()):
            pass
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_closing_the_relay_stream_closes_the_upstream_stream(make_upstream):
    upstream = make_upstream(chunks=[{"n": 1}, {"n": 2}, {"n": 3}])
    stream = CompletionRelay(upstream, _cfg()).stream(CompletionRequest(messages=HI))
    assert await anext(stream) == {"n": 1}
    await stream.aclose()
    assert upstream.stream_closed
