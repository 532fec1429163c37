from __future__ import annotations

import math
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from .contracts import CompletionRequest


class ChatCompletionRequest(BaseModel):
    """Inbound chat-completion body.

    Validation never rejects: a recognized field with the wrong type reads as
    absent, and every unrecognized field lands in ``model_extra`` untouched.
    Downstream stages decide what they cannot work with.
    """

    model_config = ConfigDict(extra="allow")

    model: str | None = None
    messages: list[dict[str, Any]] | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    stream: bool | None = None

    @field_validator("model", mode="before")
    @classmethod
    def _coerce_model(cls, v: Any) -> str | None:
        return v if isinstance(v, str) else None

    @field_validator("messages", mode="before")
    @classmethod
    def _coerce_messages(cls, v: Any) -> list[dict[str, Any]] | None:
        if not isinstance(v, list):
            return None
        if any(not isinstance(m, dict) for m in v):
            return None
        return v

    @field_validator("max_tokens", mode="before")
    @classmethod
    def _coerce_max_tokens(cls, v: Any) -> int | None:
        if isinstance(v, bool) or not isinstance(v, int):
            return None
        return v

    @field_validator("temperature", mode="before")
    @classmethod
    def _coerce_temperature(cls, v: Any) -> float | None:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        try:
            value = float(v)
        except OverflowError:
            return None
        return value if math.isfinite(value) else None

    @field_validator("stream", mode="before")
    @classmethod
    def _coerce_stream(cls, v: Any) -> bool | None:
        return v if isinstance(v, bool) else None


def normalize_request(payload: Any, *, dropped_fields: Iterable[str] = ()) -> CompletionRequest:
    if not isinstance(payload, dict):
        payload = {}
    req = ChatCompletionRequest.model_validate(payload)
    dropped = set(dropped_fields)
    extra = {k: v for k, v in (req.model_extra or {}).items() if k not in dropped}
    return CompletionRequest(
        model=req.model,
        messages=req.messages,
        max_tokens=req.max_tokens,
        temperature=req.temperature,
        stream=req.stream,
        extra=extra,
    )


class OpenAIError(BaseModel):
    message: str
    type: str = "api_error"
    param: str | None = None
    code: str | None = None


class OpenAIErrorResponse(BaseModel):
    error: OpenAIError


def make_openai_error_response(
    *,
    message: str,
    type: str = "api_error",
    param: str | None = None,
    code: str | None = None,
) -> OpenAIErrorResponse:
    return OpenAIErrorResponse(error=OpenAIError(message=message, type=type, param=param, code=code))
