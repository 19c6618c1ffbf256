# shared/llm_pricing.py
"""
Centralized model pricing for the story pipeline.
All costs are calculated server-side from reported token usage - never accept costs from clients.
Prices can be overridden through the system_config table (key 'model_pricing') or env vars.
"""

import json
import logging
import math
import os
import time
from typing import Any, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Global cache for pricing overrides loaded from the database
_pricing_cache: Optional[dict] = None
_cache_timestamp: Optional[float] = None
CACHE_TTL = 300  # 5 minutes


# USD per 1M tokens. Image models bill their prompt tokens as input.
PRICE_PER_1M: dict[str, dict[str, float]] = {
    "gpt-4.1-mini": {"input": 0.4, "output": 1.6, "cached_input": 0.1},
    "gpt-4.1": {"input": 2.0, "output": 8.0, "cached_input": 0.5},
    "gpt-image-1": {"input": 5.0, "output": 0.0},
    "gpt-image-1-mini": {"input": 1.0, "output": 0.0},
}


class TokenUsage(BaseModel):
    """Normalized usage record shared by chat and image responses"""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cached_input_tokens: Optional[int] = None
    reasoning_tokens: Optional[int] = None


def _to_int(value: Any) -> int:
    """Coerce a reported token count to a non-negative int (missing/garbage -> 0)"""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return 0
        return max(0, math.floor(value))
    return 0


def _nested_count(usage: dict, keys: tuple[str, ...], field: str) -> Any:
    for key in keys:
        details = usage.get(key)
        if isinstance(details, dict) and details.get(field) is not None:
            return details.get(field)
    return None


def normalize_usage(raw_usage: Optional[dict]) -> TokenUsage:
    """
    Normalize a provider usage block into a TokenUsage.

    Accepts both the Responses/Images shape (input_tokens, output_tokens,
    input_tokens_details.cached_tokens) and the Chat Completions shape
    (prompt_tokens, completion_tokens, prompt_tokens_details.cached_tokens).

    Args:
        raw_usage: The "usage" object from an API response (may be None)

    Returns:
        TokenUsage with non-negative counts; zero cached/reasoning counts become None
    """
    usage = raw_usage if isinstance(raw_usage, dict) else {}

    input_raw = usage.get("input_tokens")
    if input_raw is None:
        input_raw = usage.get("prompt_tokens")
    output_raw = usage.get("output_tokens")
    if output_raw is None:
        output_raw = usage.get("completion_tokens")

    input_tokens = _to_int(input_raw)
    output_tokens = _to_int(output_raw)

    total_raw = usage.get("total_tokens")
    total_tokens = _to_int(total_raw) if total_raw is not None else input_tokens + output_tokens

    cached = _to_int(
        _nested_count(usage, ("input_tokens_details", "prompt_tokens_details"), "cached_tokens")
    )
    reasoning = _to_int(
        _nested_count(usage, ("output_tokens_details", "completion_tokens_details"), "reasoning_tokens")
    )

    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
        cached_input_tokens=cached or None,
        reasoning_tokens=reasoning or None,
    )


def get_model_pricing(model: str) -> Optional[dict[str, float]]:
    """
    Get per-1M-token pricing for a model.

    Lookup order: env override -> cached database override -> built-in table.
    Returns None for unknown models.
    """
    base = PRICE_PER_1M.get(model)
    if _pricing_cache and isinstance(_pricing_cache.get(model), dict):
        base = {**(base or {}), **_pricing_cache[model]}

    overrides = load_pricing_overrides(model)
    if overrides:
        base = {**(base or {}), **overrides}

    return base


def compute_cost_usd(model: str, usage: TokenUsage) -> float:
    """
    Compute the USD cost of one model call.

    When the model has a cached-input rate and the call reports cached tokens,
    input is split into effective tokens at the full rate plus cached tokens
    at the cached rate. Unknown models cost 0.0. Never raises.
    """
    try:
        pricing = get_model_pricing(model)
        if not pricing:
            return 0.0

        input_tokens = _to_int(usage.input_tokens)
        output_tokens = _to_int(usage.output_tokens)
        cached = _to_int(usage.cached_input_tokens)

        input_rate = float(pricing.get("input", 0.0))
        output_rate = float(pricing.get("output", 0.0))
        cached_rate = pricing.get("cached_input")

        if cached_rate is not None and cached > 0:
            cached = min(cached, input_tokens)
            effective_input = input_tokens - cached
            input_cost = (effective_input / 1_000_000) * input_rate + (cached / 1_000_000) * float(
                cached_rate
            )
        else:
            input_cost = (input_tokens / 1_000_000) * input_rate

        output_cost = (output_tokens / 1_000_000) * output_rate
        return input_cost + output_cost

    except Exception as e:
        logger.warning(f"⚠️ PRICING: Failed to compute cost for {model}: {e}")
        return 0.0


async def load_pricing_from_db(db) -> dict:
    """Load pricing overrides from system_config with a 5 minute in-process cache"""
    global _pricing_cache, _cache_timestamp

    current_time = time.time()
    if (
        _pricing_cache is not None
        and _cache_timestamp is not None
        and current_time - _cache_timestamp < CACHE_TTL
    ):
        return _pricing_cache

    try:
        config_row = await db.fetch_one(
            "SELECT value FROM system_config WHERE key = 'model_pricing'"
        )
        if config_row and config_row["value"]:
            value = config_row["value"]
            pricing_config = json.loads(value) if isinstance(value, str) else dict(value)
            _pricing_cache = pricing_config
            _cache_timestamp = current_time
            logger.info("✅ Loaded pricing configuration from database")
            return pricing_config

        logger.info("No pricing overrides found in database, using built-in prices")

    except Exception as e:
        logger.error(f"❌ Failed to load pricing from database: {e}")

    _pricing_cache = {}
    _cache_timestamp = current_time
    return _pricing_cache


def invalidate_pricing_cache():
    """Force the next load_pricing_from_db call to hit the database"""
    global _pricing_cache, _cache_timestamp
    _pricing_cache = None
    _cache_timestamp = None


def load_pricing_overrides(model: str) -> dict[str, float]:
    """
    Read LLM_PRICING_OVERRIDE_<MODEL>_<RATE> environment variables.

    Example: LLM_PRICING_OVERRIDE_GPT_4_1_MINI_INPUT=0.5
    """
    prefix = "LLM_PRICING_OVERRIDE_" + model.upper().replace("-", "_").replace(".", "_") + "_"
    overrides = {}
    for rate in ("input", "output", "cached_input"):
        raw = os.getenv(prefix + rate.upper())
        if raw is None:
            continue
        try:
            overrides[rate] = float(raw)
        except ValueError:
            logger.warning(f"⚠️ PRICING: Ignoring invalid override {prefix + rate.upper()}={raw}")
    return overrides
