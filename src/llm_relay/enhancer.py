from __future__ import annotations

from typing import Protocol

import structlog

from .contracts import CompletionRequest, EnhancementResult
from .errors import EnhancementUpstreamError, InvalidRequestError, MissingContextError, UpstreamError

log = structlog.get_logger()

ENHANCEMENT_TEMPLATE = (
    "Create a prompt which can act as a prompt template where I put the original prompt "
    "and it can modify it according to my intentions so that the final modified prompt "
    "is more detailed. You can expand certain terms or keywords.\n"
    "----------\n"
    "PROMPT: {prompt}.\n"
    "MODIFIED PROMPT: "
)


class TextCompletionClient(Protocol):
    async def create_text_completion(
        self, *, model: str, prompt: str, max_tokens: int, temperature: float
    ) -> EnhancementResult: ...


def build_enhancement_prompt(content: str) -> str:
    return ENHANCEMENT_TEMPLATE.format(prompt=content)


class PromptEnhancer:
    """Rewrites the final message of a request into a more detailed prompt.

    One instruct-mode completion call per request. There is no fallback: if
    the rewrite cannot be produced the request fails.
    """

    def __init__(
        self,
        upstream: TextCompletionClient,
        *,
        model: str = "gpt-3.5-turbo-instruct",
        max_tokens: int = 500,
        temperature: float = 0.7,
    ):
        self.upstream = upstream
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def enhance(self, request: CompletionRequest) -> CompletionRequest:
        messages = request.messages
        if not messages:
            raise MissingContextError("messages must be a non-empty list to enhance the prompt.")

        last = messages[-1]
        content = last.get("content")
        if not isinstance(content, str):
            raise InvalidRequestError("The last message must have string content to enhance the prompt.")

        try:
            result = await self.upstream.create_text_completion(
                model=self.model,
                prompt=build_enhancement_prompt(content),
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except UpstreamError as e:
            log.warning("enhancement_failed", model=self.model, error=str(e))
            raise EnhancementUpstreamError(f"Prompt enhancement failed: {e}") from e

        if not result.text.strip():
            log.warning("enhancement_empty", model=self.model)
            raise EnhancementUpstreamError("Prompt enhancement returned no text.")

        log.info("enhancement_ok", model=self.model, original_chars=len(content), enhanced_chars=len(result.text))
        return request.with_messages([*messages[:-1], {**last, "content": result.text}])
