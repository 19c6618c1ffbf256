import pytest

from shared.llm_pricing import (
    TokenUsage,
    compute_cost_usd,
    get_model_pricing,
    invalidate_pricing_cache,
    load_pricing_from_db,
    normalize_usage,
)


@pytest.fixture(autouse=True)
def reset_pricing_cache():
    invalidate_pricing_cache()
    yield
    invalidate_pricing_cache()


def test_normalize_usage_responses_shape():
    usage = normalize_usage(
        {
            "input_tokens": 1200,
            "output_tokens": 300,
            "input_tokens_details": {"cached_tokens": 200},
            "output_tokens_details": {"reasoning_tokens": 40},
        }
    )

    assert usage.input_tokens == 1200
    assert usage.output_tokens == 300
    assert usage.total_tokens == 1500
    assert usage.cached_input_tokens == 200
    assert usage.reasoning_tokens == 40


def test_normalize_usage_chat_completions_shape():
    usage = normalize_usage(
        {
            "prompt_tokens": 10,
            "completion_tokens": 5,
            "total_tokens": 15,
            "prompt_tokens_details": {"cached_tokens": 0},
        }
    )

    assert (usage.input_tokens, usage.output_tokens, usage.total_tokens) == (10, 5, 15)
    # Zero cached tokens are reported as absent
    assert usage.cached_input_tokens is None
    assert usage.reasoning_tokens is None


@pytest.mark.parametrize("raw", [None, {}, "not a dict", {"input_tokens": -5, "output_tokens": "x"}])
def test_normalize_usage_garbage_is_zero(raw):
    usage = normalize_usage(raw)
    assert usage.input_tokens == 0
    assert usage.output_tokens == 0
    assert usage.total_tokens == 0


def test_normalize_usage_ignores_booleans_and_floors_floats():
    usage = normalize_usage({"input_tokens": True, "output_tokens": 7.9})
    assert usage.input_tokens == 0
    assert usage.output_tokens == 7


def test_compute_cost_without_cached_tokens():
    cost = compute_cost_usd("gpt-4.1-mini", TokenUsage(input_tokens=1000, output_tokens=500))
    assert cost == pytest.approx(0.0012)


def test_compute_cost_splits_cached_input():
    usage = TokenUsage(input_tokens=1000, output_tokens=500, cached_input_tokens=400)
    # 600 full-rate + 400 cached-rate input tokens, plus output
    assert compute_cost_usd("gpt-4.1-mini", usage) == pytest.approx(0.00108)


def test_compute_cost_caps_cached_at_input():
    usage = TokenUsage(input_tokens=100, output_tokens=0, cached_input_tokens=5000)
    assert compute_cost_usd("gpt-4.1-mini", usage) == pytest.approx(100 / 1_000_000 * 0.1)


def test_compute_cost_unknown_model_is_free():
    assert compute_cost_usd("mystery-model", TokenUsage(input_tokens=10_000, output_tokens=10_000)) == 0.0


def test_image_model_bills_prompt_tokens_only():
    usage = TokenUsage(input_tokens=2000, output_tokens=4000)
    assert compute_cost_usd("gpt-image-1", usage) == pytest.approx(0.01)


def test_env_override_replaces_rate(monkeypatch):
    monkeypatch.setenv("LLM_PRICING_OVERRIDE_GPT_4_1_MINI_INPUT", "1.0")
    monkeypatch.setenv("LLM_PRICING_OVERRIDE_GPT_4_1_MINI_OUTPUT", "not-a-number")

    pricing = get_model_pricing("gpt-4.1-mini")

    assert pricing["input"] == 1.0
    assert pricing["output"] == 1.6


class FakePricingDB:
    def __init__(self, value):
        self.value = value
        self.queries = 0

    async def fetch_one(self, query, *args):
        self.queries += 1
        return {"value": self.value} if self.value is not None else None


@pytest.mark.asyncio
async def test_database_pricing_is_cached_and_merged():
    db = FakePricingDB('{"gpt-4.1-mini": {"output": 2.0}}')

    first = await load_pricing_from_db(db)
    second = await load_pricing_from_db(db)

    assert first == second == {"gpt-4.1-mini": {"output": 2.0}}
    assert db.queries == 1
    assert get_model_pricing("gpt-4.1-mini") == {"input": 0.4, "output": 2.0, "cached_input": 0.1}


@pytest.mark.asyncio
async def test_missing_database_pricing_uses_builtin_table():
    assert await load_pricing_from_db(FakePricingDB(None)) == {}
    assert get_model_pricing("gpt-4.1") == {"input": 2.0, "output": 8.0, "cached_input": 0.5}


@pytest.mark.asyncio
async def test_compute_cost_uses_database_pricing():
    usage = TokenUsage(input_tokens=1000, output_tokens=500)
    builtin = compute_cost_usd("gpt-4.1-mini", usage)

    await load_pricing_from_db(FakePricingDB({"gpt-4.1-mini": {"input": 1.0, "output": 2.0}}))

    assert builtin == pytest.approx(0.0012)
    assert compute_cost_usd("gpt-4.1-mini", usage) == pytest.approx(0.002)


@pytest.mark.asyncio
async def test_pipeline_settings_dependency_loads_database_pricing(monkeypatch):
    import story_routes

    async def no_redis():
        return None

    monkeypatch.setattr(story_routes, "get_optional_redis", no_redis)
    db = FakePricingDB('{"gpt-image-1": {"input": 10.0}}')

    await story_routes.get_pipeline_settings(db)

    assert db.queries >= 1
    assert compute_cost_usd("gpt-image-1", TokenUsage(input_tokens=1000)) == pytest.approx(0.01)
