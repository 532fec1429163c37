import asyncio

import pytest

from llm_relay.contracts import EnhancementResult


class FakeUpstream:
    """In-memory upstream that records every call in order."""

    def __init__(
        self,
        *,
        result=None,
        chunks=(),
        enhancement="detailed hi",
        chat_error=None,
        stream_error=None,
        stream_error_after=None,
        enhancement_error=None,
        stream_stall_after=None,
        delay_seconds=0.0,
    ):
        self.result = result if result is not None else {"id": "chatcmpl-1", "object": "chat.completion"}
        self.chunks = list(chunks)
        self.enhancement = enhancement
        self.chat_error = chat_error
        self.stream_error = stream_error
        self.stream_error_after = stream_error_after
        self.enhancement_error = enhancement_error
        self.stream_stall_after = stream_stall_after
        self.delay_seconds = delay_seconds
        self.calls = []
        self.stream_closed = False
        self.closed = False

    @property
    def operations(self):
        return [op for op, _ in self.calls]

    def payload_of(self, operation):
        for op, payload in self.calls:
            if op == operation:
                return payload
        raise AssertionError(f"no {operation} call recorded")

    async def create_chat_completion(self, payload):
        self.calls.append(("chat_completion", payload))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.chat_error is not None:
            raise self.chat_error
        return self.result

    async def stream_chat_completion(self, payload):
        self.calls.append(("chat_completion_stream", payload))
        try:
            for i, chunk in enumerate(self.chunks):
                if self.stream_error is not None and self.stream_error_after == i:
                    raise self.stream_error
                if self.stream_stall_after == i:
                    await asyncio.sleep(10)
                yield chunk
            if self.stream_error is not None and self.stream_error_after in (None, len(self.chunks)):
                raise self.stream_error
        finally:
            self.stream_closed = True

    async def create_text_completion(self, *, model, prompt, max_tokens, temperature):
        self.calls.append(
            ("text_completion", {"model": model, "prompt": prompt, "max_tokens": max_tokens, "temperature": temperature})
        )
        if self.enhancement_error is not None:
            raise self.enhancement_error
        return EnhancementResult(text=self.enhancement)

    async def close(self):
        self.closed = True


@pytest.fixture
def make_upstream():
    return FakeUpstream
