from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

# Upstream documents are relayed as-is.
CompletionResult = dict[str, Any]
CompletionChunk = dict[str, Any]
Message = dict[str, Any]


@dataclass(frozen=True)
class CompletionRequest:
    model: str | None = None
    messages: list[Message] | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    stream: bool | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def with_messages(self, messages: list[Message]) -> "CompletionRequest":
        return replace(self, messages=messages)


@dataclass(frozen=True)
class EnhancementResult:
    text: str
