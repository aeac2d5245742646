from __future__ import annotations

import math

# Context window budgets per backend (tokens).
PROVIDER_TOKEN_LIMITS = {
    "anthropic": 180000,
    "openai": 110000,
    "gemini": 900000,
}


def estimate_tokens(text: str) -> int:
    """Cheap, tokenizer-free estimate (~4 chars per token)."""
    if not text:
        return 0
    return int(math.ceil(len(text) / 4.0))
