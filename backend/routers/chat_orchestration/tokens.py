"""
Token Budgeter - cheap token estimates for budget decisions.

Uses ~3.5 chars per token for English text (conservative). The estimate
only has to be monotonic and stable; the provider reports real usage
after the fact.
"""

import math
from typing import Any, Dict, Iterable

CHARS_PER_TOKEN = 3.5


def estimate_tokens(text: Any) -> int:
    """Estimate the token count of a piece of text.

    Args:
        text: Text to measure. Anything that isn't a non-empty string counts as 0.

    Returns:
        Estimated token count (never negative, never raises)
    """
    if not isinstance(text, str) or not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_turns_tokens(turns: Iterable[Dict[str, Any]]) -> int:
    """Sum of estimates over chat turns ({"role", "content"} dicts)."""
    return sum(estimate_tokens(turn.get("content")) for turn in turns)
