"""LLM utilities: token estimation and the default generation function."""

from src.llm.client import (
    GenerationOutput,
    generate_completion,
    get_anthropic_client,
)
from src.llm.tokens import estimate_tokens, now_ms

__all__ = [
    "GenerationOutput",
    "generate_completion",
    "get_anthropic_client",
    "estimate_tokens",
    "now_ms",
]
