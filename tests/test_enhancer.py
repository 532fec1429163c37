import copy

import pytest

from llm_relay.contracts import CompletionRequest
from llm_relay.enhancer import PromptEnhancer, build_enhancement_prompt
from llm_relay.errors import (
    EnhancementUpstreamError,
    InvalidRequestError,
    MissingContextError,
    UpstreamProtocolError,
)


def _request(**overrides):
    fields = dict(
        model="gpt-4o-mini",
        messages=[
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "hi", "name": "bob"},
        ],
        max_tokens=64,
        temperature=0.1,
        stream=True,
        extra={"top_p": 0.5},
    )
    fields.update(overrides)
    return CompletionRequest(**fields)


@pytest.mark.asyncio
async def test_enhance_replaces_only_the_last_message_content(make_upstream):
    upstream = make_upstream(enhancement="detailed hi")
    req = _request()
    original_messages = copy.deepcopy(req.messages)

    out = await PromptEnhancer(upstream).enhance(req)

    assert len(out.messages) == len(req.messages)
    assert out.messages[0] == {"role": "system", "content": "Be brief."}
    assert out.messages[-1] == {"role": "user", "content": "detailed hi", "name": "bob"}
    assert req.messages == original_messages


@pytest.mark.asyncio
async def test_enhance_passes_other_fields_through(make_upstream):
    req = _request()
    out = await PromptEnhancer(make_upstream()).enhance(req)
    assert out.model == req.model
    assert out.max_tokens == req.max_tokens
    assert out.temperature == req.temperature
    assert out.stream == req.stream
    assert out.extra == req.extra


@pytest.mark.asyncio
async def test_enhance_issues_one_instruct_call_with_fixed_budget(make_upstream):
    upstream = make_upstream()
    await PromptEnhancer(upstream, model="instruct-x", max_tokens=500, temperature=0.7).enhance(_request())

    assert upstream.operations == ["text_completion"]
    call = upstream.payload_of("text_completion")
    assert call["model"] == "instruct-x"
    assert call["max_tokens"] == 500
    assert call["temperature"] == 0.7
    assert call["prompt"] == build_enhancement_prompt("hi")
    assert "PROMPT: hi." in call["prompt"]


@pytest.mark.asyncio
@pytest.mark.parametrize("messages", [[], None])
async def test_enhance_without_messages_makes_no_upstream_call(make_upstream, messages):
    upstream = make_upstream()
    with pytest.raises(MissingContextError) as exc:
        await PromptEnhancer(upstream).enhance(_request(messages=messages))
    assert isinstance(exc.value, InvalidRequestError)
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_enhance_rejects_non_text_last_message(make_upstream):
    upstream = make_upstream()
    req = _request(messages=[{"role": "user", "content": [{"type": "image_url"}]}])
    with pytest.raises(InvalidRequestError):
        await PromptEnhancer(upstream).enhance(req)
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_enhance_wraps_upstream_failures(make_upstream):
    cause = UpstreamProtocolError("Upstream error 503.")
    upstream = make_upstream(enhancement_error=cause)
    with pytest.raises(EnhancementUpstreamError) as exc:
        await PromptEnhancer(upstream).enhance(_request())
    assert exc.value.__cause__ is cause


@pytest.mark.asyncio
async def test_enhance_refuses_blank_rewrites(make_upstream):
    with pytest.raises(EnhancementUpstreamError):
        await PromptEnhancer(make_upstream(enhancement="  \n")).enhance(_request())
