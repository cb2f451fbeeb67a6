"""Anthropic-backed generation function for chunk executors.

generate_completion() matches the generation-function contract used by
CachedChunkExecutor:

    generate(system_prompt, messages, model) -> GenerationOutput

Transient failures are retried with increasing delays. Authentication and
context-length errors are raised immediately.
"""

import logging
import os
import time
from typing import Optional, Sequence

import anthropic
from pydantic import BaseModel

logger = logging.getLogger(__name__)

GENERATION_MODEL = os.environ.get("GENERATION_MODEL", "claude-sonnet-4-5-20250929")
DEFAULT_MAX_TOKENS = 8000

# Retry settings
MAX_RETRIES = 3
RETRY_DELAYS = [5, 15, 30]  # seconds

_NON_RETRYABLE = (
    ("invalid_api_key", "Authentication error"),
    ("authentication", "Authentication error"),
    ("context_length_exceeded", "Context too long"),
    ("too many tokens", "Context too long"),
    ("prompt is too long", "Context too long"),
)


class GenerationOutput(BaseModel):
    """Text produced by one generation call plus its token usage."""

    text: str
    input_tokens: int = 0
    output_tokens: int = 0


def get_anthropic_client() -> Optional[anthropic.Anthropic]:
    """Get an Anthropic client, or None if ANTHROPIC_API_KEY is not set."""
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        return None
    return anthropic.Anthropic(api_key=api_key)


def _to_api_messages(messages: Sequence) -> list[dict]:
    api_messages = []
    for message in messages:
        if isinstance(message, dict):
            api_messages.append({"role": message["role"], "content": message["content"]})
        else:
            api_messages.append({"role": message.role, "content": message.content})
    return api_messages


def generate_completion(
    system_prompt: str,
    messages: Sequence,
    model: str = GENERATION_MODEL,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    client: Optional[anthropic.Anthropic] = None,
    retry_delays: Sequence[float] = RETRY_DELAYS,
) -> GenerationOutput:
    """Call the Messages API, retrying transient errors.

    Args:
        system_prompt: System prompt (omitted from the request when empty)
        messages: Conversation as Message models or {"role", "content"} dicts
        model: Model id
        max_tokens: Maximum tokens in the response
        client: Anthropic client; built from the environment when omitted
        retry_delays: Seconds to wait before each retry

    Returns:
        GenerationOutput with the concatenated text blocks and token usage

    Raises:
        RuntimeError: No API key, a non-retryable error, or retries exhausted
    """
    client = client or get_anthropic_client()
    if client is None:
        raise RuntimeError(
            "LLM service unavailable. Set ANTHROPIC_API_KEY environment variable."
        )

    kwargs = {
        "model": model,
        "max_tokens": max_tokens,
        "messages": _to_api_messages(messages),
    }
    if system_prompt:
        kwargs["system"] = system_prompt

    attempts = 1 + len(retry_delays)
    last_error = None
    for attempt in range(attempts):
        if attempt > 0:
            delay = retry_delays[attempt - 1]
            logger.warning(
                f"Retry {attempt}/{len(retry_delays)} after {delay}s "
                f"(previous error: {last_error})"
            )
            time.sleep(delay)

        try:
            response = client.messages.create(**kwargs)
        except Exception as e:
            last_error = str(e)
            logger.error(f"Generation attempt {attempt + 1} with {model} failed: {last_error}")

            error_str = last_error.lower()
            for marker, reason in _NON_RETRYABLE:
                if marker in error_str:
                    raise RuntimeError(f"{reason} (not retrying): {e}") from e
            continue

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "text") == "text"
        )
        output = GenerationOutput(
            text=text,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        logger.info(
            f"Generation completed with {model}: "
            f"{output.input_tokens}+{output.output_tokens} tokens"
        )
        return output

    raise RuntimeError(f"Generation failed after {attempts} attempts. Last error: {last_error}")
