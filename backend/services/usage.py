"""
Usage accounting - token counts and estimated cost per streamed reply.

Recording is best-effort: a failed insert is logged and the reply is
unaffected.
"""

import logging
from typing import Dict, Optional

from errors import soft_fail
from services.chat_store import ChatStore, new_id, utcnow

logger = logging.getLogger(__name__)

# USD per 1M tokens, keyed by model family
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-5.1": {"input": 1.25, "cached": 0.125, "output": 10.0},
    "gpt-5-pro": {"input": 15.0, "cached": 1.5, "output": 120.0},
    "gpt-5-mini": {"input": 0.25, "cached": 0.025, "output": 2.0},
    "gpt-5-nano": {"input": 0.05, "cached": 0.005, "output": 0.4},
}

# USD per 1k tool calls
TOOL_CALL_PRICING_PER_1K = {
    "search": 10.0,
    "file_search": 2.5,
}


def pricing_for_model(model: str) -> Optional[Dict[str, float]]:
    """Price row for a family name or a dated provider model id."""
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    for family in sorted(MODEL_PRICING, key=len, reverse=True):
        if model.startswith(family):
            return MODEL_PRICING[family]
    return None


def calculate_cost(
    model: str,
    input_tokens: int,
    cached_tokens: int = 0,
    output_tokens: int = 0,
    tool_calls: Optional[Dict[str, int]] = None,
) -> float:
    """Estimated USD cost. Cached tokens are billed at the cached rate, not twice."""
    pricing = pricing_for_model(model)
    cost = 0.0
    if pricing is not None:
        uncached = max(0, input_tokens - cached_tokens)
        cost += uncached / 1_000_000 * pricing["input"]
        cost += cached_tokens / 1_000_000 * pricing["cached"]
        cost += output_tokens / 1_000_000 * pricing["output"]
    else:
        logger.debug(f"No pricing for model {model}")
    for tool, count in (tool_calls or {}).items():
        cost += count / 1000 * TOOL_CALL_PRICING_PER_1K.get(tool, 0.0)
    return round(cost, 8)


@soft_fail("usage", default=False, logger=logger)
async def record_usage(
    store: ChatStore,
    user_id: str,
    conversation_id: Optional[str],
    model: str,
    input_tokens: int,
    cached_tokens: int = 0,
    output_tokens: int = 0,
    reasoning_tokens: int = 0,
    tool_calls: Optional[Dict[str, int]] = None,
) -> bool:
    """Insert one usage row. Returns False (logged) when the write fails."""
    cost = calculate_cost(model, input_tokens, cached_tokens, output_tokens, tool_calls)
    await store.insert_usage(
        {
            "id": new_id(),
            "user_id": user_id,
            "conversation_id": conversation_id,
            "model": model,
            "input_tokens": input_tokens,
            "cached_tokens": cached_tokens,
            "output_tokens": output_tokens,
            "reasoning_tokens": reasoning_tokens,
            "estimated_cost": cost,
            "created_at": utcnow(),
        }
    )
    logger.debug(f"Usage recorded: {model} in={input_tokens} out={output_tokens} cost=${cost:.6f}")
    return True
