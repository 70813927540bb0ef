"""
Token counting and usage tracking.

Holds token counts reported when a usage event completes.
"""

import math
from dataclasses import dataclass

# Rough average for English text
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by the summarization call."""
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: str) -> int:
    """Estimate token count for text when the provider reports none."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def token_budget(max_chars: int) -> int:
    """Token cap that keeps a completion within ``max_chars`` characters."""
    return max(1, max_chars // CHARS_PER_TOKEN)
