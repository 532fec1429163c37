from .config import RelayConfig
from .contracts import CompletionRequest, EnhancementResult
from .enhancer import PromptEnhancer
from .openai_compat import normalize_request
from .openai_upstream import OpenAIUpstream
from .relay import CompletionRelay

__all__ = [
    "CompletionRelay",
    "CompletionRequest",
    "EnhancementResult",
    "OpenAIUpstream",
    "PromptEnhancer",
    "RelayConfig",
    "normalize_request",
]
