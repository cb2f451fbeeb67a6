"""Token estimation and timestamp helpers shared by the pipeline and the cache."""

import math
import time

# Rough characters-per-token ratio for code-heavy prompts
CHARS_PER_TOKEN = 3.5


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a piece of text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)
