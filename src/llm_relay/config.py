from __future__ import annotations

import os

from pydantic import BaseModel, Field


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class RelayConfig(BaseModel):
    # Upstream service
    openai_api_key: str | None = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    openai_base_url: str = Field(
        default_factory=lambda: os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    )

    # Main completion defaults, applied when the caller leaves a field out
    default_model: str = Field(default_factory=lambda: os.getenv("DEFAULT_MODEL", "gpt-3.5-turbo"))
    default_max_tokens: int = Field(default_factory=lambda: int(os.getenv("DEFAULT_MAX_TOKENS", "150")))
    default_temperature: float = Field(
        default_factory=lambda: float(os.getenv("DEFAULT_TEMPERATURE", "0.7"))
    )

    # Prompt enhancement pass
    enhancement_model: str = Field(
        default_factory=lambda: os.getenv("ENHANCEMENT_MODEL", "gpt-3.5-turbo-instruct")
    )
    enhancement_max_tokens: int = Field(
        default_factory=lambda: int(os.getenv("ENHANCEMENT_MAX_TOKENS", "500"))
    )
    enhancement_temperature: float = Field(
        default_factory=lambda: float(os.getenv("ENHANCEMENT_TEMPERATURE", "0.7"))
    )

    # Inbound fields stripped before forwarding
    dropped_fields: list[str] = Field(
        default_factory=lambda: _parse_csv(os.getenv("DROPPED_FIELDS", "call"))
    )

    # Event stream framing
    stream_done_marker: bool = Field(default_factory=lambda: _env_flag("STREAM_DONE_MARKER", "false"))
    stream_error_frame: bool = Field(default_factory=lambda: _env_flag("STREAM_ERROR_FRAME", "true"))

    # Observability
    enable_metrics: bool = Field(default_factory=lambda: _env_flag("ENABLE_METRICS", "false"))
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))

    # Server hardening
    enable_api_docs: bool = Field(default_factory=lambda: _env_flag("ENABLE_API_DOCS", "false"))
    allowed_hosts: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ALLOWED_HOSTS")))
    cors_allow_origins: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("CORS_ALLOW_ORIGINS")))
    cors_allow_credentials: bool = Field(
        default_factory=lambda: _env_flag("CORS_ALLOW_CREDENTIALS", "false")
    )
    max_request_body_bytes: int = Field(
        default_factory=lambda: int(os.getenv("MAX_REQUEST_BODY_BYTES", str(1024 * 1024)))
    )
    max_inflight_requests: int = Field(default_factory=lambda: int(os.getenv("MAX_INFLIGHT_REQUESTS", "32")))

    # HTTP behavior toward the upstream
    upstream_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "60"))
    )
    upstream_max_attempts: int = Field(default_factory=lambda: int(os.getenv("UPSTREAM_MAX_ATTEMPTS", "1")))
    upstream_backoff_initial_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_BACKOFF_INITIAL_SECONDS", "0.5"))
    )
    upstream_backoff_max_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_BACKOFF_MAX_SECONDS", "8.0"))
    )
    upstream_circuit_breaker_failures: int = Field(
        default_factory=lambda: int(os.getenv("UPSTREAM_CIRCUIT_BREAKER_FAILURES", "5"))
    )
    upstream_circuit_breaker_reset_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_CIRCUIT_BREAKER_RESET_SECONDS", "30"))
    )

    # End-to-end deadlines; 0 disables
    chat_completions_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CHAT_COMPLETIONS_TIMEOUT_SECONDS", "90"))
    )
    chat_completions_stream_idle_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CHAT_COMPLETIONS_STREAM_IDLE_TIMEOUT_SECONDS", "30"))
    )
    chat_completions_stream_total_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CHAT_COMPLETIONS_STREAM_TOTAL_TIMEOUT_SECONDS", "300"))
    )

    def secrets(self) -> list[str]:
        return [s for s in (self.openai_api_key,) if s]
