import uuid
from decimal import Decimal

import pytest
from conftest import FakeCostLogger

from shared.generation_cost_logger import (
    CostRow,
    CostTracking,
    GenerationCostLogger,
    call_with_cost,
    configure_cost_logger,
    flush_deferred_costs,
    record_cost,
    summarize_story_costs,
)

RESPONSE = {
    "id": "chatcmpl-123",
    "usage": {"prompt_tokens": 1000, "completion_tokens": 500, "total_tokens": 1500},
    "choices": [{"message": {"content": "hello"}}],
}


@pytest.fixture(autouse=True)
def no_default_ledger():
    configure_cost_logger(None)
    yield
    configure_cost_logger(None)


async def _respond() -> dict:
    return RESPONSE


@pytest.mark.asyncio
async def test_call_with_cost_reports_and_persists(cost_logger: FakeCostLogger):
    """A tracked call emits one row to the callback and one to the ledger"""
    seen: list[CostRow] = []
    story_id = str(uuid.uuid4())
    tracking = CostTracking(story_id=story_id, page_number=3, step="page_write", on_tracked=seen.append)

    response = await call_with_cost("gpt-4.1-mini", _respond, tracking, cost_logger)

    assert response is RESPONSE
    assert len(seen) == 1
    assert seen[0].story_id is None
    assert seen[0].step == "page_write"
    assert seen[0].cost_usd == pytest.approx(0.0012)

    assert len(cost_logger.rows) == 1
    row = cost_logger.rows[0]
    assert row.story_id == story_id
    assert row.page_number == 3
    assert row.response_id == "chatcmpl-123"
    assert row.total_tokens == 1500


@pytest.mark.asyncio
async def test_untracked_call_skips_accounting(cost_logger: FakeCostLogger):
    assert await call_with_cost("gpt-4.1-mini", _respond, None, cost_logger) is RESPONSE
    assert cost_logger.rows == []


@pytest.mark.asyncio
async def test_unsaved_story_rows_are_only_reported(cost_logger: FakeCostLogger):
    seen: list[CostRow] = []
    tracking = CostTracking(step="plan", on_tracked=seen.append)

    await call_with_cost("gpt-4.1-mini", _respond, tracking, cost_logger)

    assert len(seen) == 1
    assert cost_logger.rows == []


@pytest.mark.asyncio
async def test_provider_errors_propagate_without_rows(cost_logger: FakeCostLogger):
    async def failing() -> dict:
        raise RuntimeError("provider down")

    with pytest.raises(RuntimeError, match="provider down"):
        await call_with_cost(
            "gpt-4.1-mini", failing, CostTracking(story_id=str(uuid.uuid4()), step="plan"), cost_logger
        )
    assert cost_logger.rows == []


@pytest.mark.asyncio
async def test_callback_and_ledger_failures_never_fail_the_call():
    class BrokenLedger:
        async def log_cost(self, row):
            raise ConnectionError("db gone")

    def broken_callback(row):
        raise ValueError("callback broke")

    tracking = CostTracking(story_id=str(uuid.uuid4()), step="plan", on_tracked=broken_callback)
    assert await call_with_cost("gpt-4.1-mini", _respond, tracking, BrokenLedger()) is RESPONSE


@pytest.mark.asyncio
async def test_record_cost_uses_configured_default(cost_logger: FakeCostLogger):
    row = CostRow(story_id=str(uuid.uuid4()), step="plan", model="gpt-4.1-mini")

    assert await record_cost(row) is False

    configure_cost_logger(cost_logger)
    assert await record_cost(row) is True
    assert cost_logger.rows == [row]


@pytest.mark.asyncio
async def test_flush_deferred_costs_attaches_story(cost_logger: FakeCostLogger):
    story_id = str(uuid.uuid4())
    rows = [
        CostRow(step="plan", model="gpt-4.1-mini", cost_usd=0.01),
        CostRow(step="page_write", model="gpt-4.1-mini", page_number=1, cost_usd=0.02),
    ]

    written = await flush_deferred_costs(story_id, rows, cost_logger)

    assert written == 2
    assert [r.story_id for r in cost_logger.rows] == [story_id, story_id]
    # The caller's rows are untouched
    assert all(r.story_id is None for r in rows)


def test_summarize_story_costs_groups_by_step_in_first_seen_order():
    rows = [
        CostRow(step="plan", model="m", cost_usd=0.01),
        CostRow(step="page_write", model="m", cost_usd=0.02),
        CostRow(step="plan", model="m", cost_usd=0.005),
    ]

    summary = summarize_story_costs(rows)

    assert summary.has_rows is True
    assert summary.total_cost_usd == pytest.approx(0.035)
    assert [s.step for s in summary.breakdown] == ["plan", "page_write"]
    assert summary.breakdown[0].cost_usd == pytest.approx(0.015)


def test_summarize_no_rows():
    summary = summarize_story_costs([])
    assert summary.has_rows is False
    assert summary.total_cost_usd == 0.0
    assert summary.breakdown == []


class RecordingDB:
    def __init__(self, rows=None):
        self.executed = []
        self.rows = rows or []

    async def execute(self, query, *args):
        self.executed.append(args)
        return "INSERT 0 1"

    async def fetch_all(self, query, *args):
        return self.rows


@pytest.mark.asyncio
async def test_generation_cost_logger_writes_and_reads_rows():
    story_id = uuid.uuid4()
    db = RecordingDB(
        rows=[
            {
                "story_id": story_id,
                "page_number": None,
                "step": "plan",
                "provider": "openai",
                "model": "gpt-4.1-mini",
                "input_tokens": 10,
                "output_tokens": 5,
                "total_tokens": 15,
                "cached_input_tokens": None,
                "reasoning_tokens": None,
                "cost_usd": Decimal("0.000012"),
                "response_id": None,
            }
        ]
    )
    ledger = GenerationCostLogger(db)

    await ledger.log_cost(CostRow(story_id=str(story_id), step="plan", model="gpt-4.1-mini"))
    rows = await ledger.list_costs(str(story_id))

    assert db.executed[0][1] == story_id
    assert db.executed[0][3] == "plan"
    assert rows[0].story_id == str(story_id)
    assert rows[0].cost_usd == pytest.approx(0.000012)
