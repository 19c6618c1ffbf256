# shared/generation_cost_logger.py
"""
Per-call cost accounting for the story pipeline.
Every LLM/image call is wrapped so that it emits exactly one CostRow, and rows
tied to a saved story are appended to the generation_costs ledger.
"""

import logging
from collections.abc import Awaitable
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel

from shared.database import Database
from shared.llm_pricing import compute_cost_usd, normalize_usage

logger = logging.getLogger(__name__)


class CostRow(BaseModel):
    """One append-only ledger entry for a single model call"""

    story_id: Optional[str] = None
    page_number: Optional[int] = None
    step: str
    provider: str = "openai"
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cached_input_tokens: Optional[int] = None
    reasoning_tokens: Optional[int] = None
    cost_usd: float = 0.0
    response_id: Optional[str] = None


class CostTracking(BaseModel):
    """Where a call's cost should be attributed and who wants to hear about it"""

    story_id: Optional[str] = None
    page_number: Optional[int] = None
    step: str
    on_tracked: Optional[Callable[[CostRow], Any]] = None

    def for_step(self, step: str) -> "CostTracking":
        return self.model_copy(update={"step": step})


class StepCost(BaseModel):
    step: str
    cost_usd: float


class StoryCostSummary(BaseModel):
    total_cost_usd: float = 0.0
    has_rows: bool = False
    breakdown: list[StepCost] = []


class GenerationCostLogger:
    """Persistence for the generation_costs ledger"""

    def __init__(self, db: Database):
        self.db = db

    async def log_cost(self, row: CostRow) -> UUID:
        """
        Append a cost row to the ledger.

        Args:
            row: CostRow with story_id set

        Returns:
            UUID of the created ledger entry
        """
        cost_id = uuid4()
        await self.db.execute(
            """
            INSERT INTO generation_costs (
                id, story_id, page_number, step, provider, model,
                input_tokens, output_tokens, total_tokens,
                cached_input_tokens, reasoning_tokens, cost_usd, response_id
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            """,
            cost_id,
            UUID(row.story_id),
            row.page_number,
            row.step,
            row.provider,
            row.model,
            row.input_tokens,
            row.output_tokens,
            row.total_tokens,
            row.cached_input_tokens,
            row.reasoning_tokens,
            row.cost_usd,
            row.response_id,
        )
        logger.info(
            f"💰 COST: {row.step} {row.model} - {row.total_tokens} tokens - ${row.cost_usd:.6f}"
        )
        return cost_id

    async def list_costs(self, story_id: str) -> list[CostRow]:
        rows = await self.db.fetch_all(
            """
            SELECT story_id, page_number, step, provider, model,
                   input_tokens, output_tokens, total_tokens,
                   cached_input_tokens, reasoning_tokens, cost_usd, response_id
            FROM generation_costs
            WHERE story_id = $1
            ORDER BY created_at ASC
            """,
            UUID(story_id),
        )
        return [
            CostRow(**{**row, "story_id": str(row["story_id"]), "cost_usd": float(row["cost_usd"])})
            for row in rows
        ]


# Ledger used when a call doesn't bring its own (set at service startup)
_default_cost_logger: Optional[GenerationCostLogger] = None


def configure_cost_logger(cost_logger: Optional[GenerationCostLogger]) -> None:
    global _default_cost_logger
    _default_cost_logger = cost_logger


def build_cost_row(model: str, response: Any, tracking: CostTracking) -> CostRow:
    """Build a CostRow from a raw provider response dict"""
    payload = response if isinstance(response, dict) else {}
    usage = normalize_usage(payload.get("usage"))
    response_id = payload.get("id")

    return CostRow(
        story_id=tracking.story_id,
        page_number=tracking.page_number,
        step=tracking.step,
        provider="openai",
        model=model,
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        total_tokens=usage.total_tokens,
        cached_input_tokens=usage.cached_input_tokens,
        reasoning_tokens=usage.reasoning_tokens,
        cost_usd=compute_cost_usd(model, usage),
        response_id=str(response_id) if response_id else None,
    )


async def record_cost(row: CostRow, cost_logger: Optional[GenerationCostLogger] = None) -> bool:
    """Persist a row best-effort. Returns True when the row was written."""
    sink = cost_logger or _default_cost_logger
    if not row.story_id or sink is None:
        return False
    try:
        await sink.log_cost(row)
        return True
    except Exception as e:
        logger.warning(f"⚠️ COST: Failed to persist cost row for step {row.step}: {e}")
        return False


async def call_with_cost(
    model: str,
    create_response: Callable[[], Awaitable[dict]],
    tracking: Optional[CostTracking],
    cost_logger: Optional[GenerationCostLogger] = None,
) -> dict:
    """
    Run a provider call and account for its cost.

    The call's own errors propagate untouched. Cost computation and ledger
    writes never fail the wrapped call.

    Args:
        model: Model id the call was made with (drives pricing)
        create_response: Zero-arg coroutine factory returning the raw JSON response
        tracking: Attribution for the row (None skips accounting entirely)
        cost_logger: Ledger override, defaults to the configured service ledger

    Returns:
        The raw response dict
    """
    response = await create_response()
    if tracking is None:
        return response

    row = build_cost_row(model, response, tracking)

    if tracking.on_tracked:
        try:
            tracking.on_tracked(row.model_copy(update={"story_id": None}))
        except Exception as e:
            logger.warning(f"⚠️ COST: on_tracked callback failed for step {row.step}: {e}")

    await record_cost(row, cost_logger)
    return response


async def flush_deferred_costs(
    story_id: str, rows: list[CostRow], cost_logger: Optional[GenerationCostLogger] = None
) -> int:
    """Attach a story id to rows collected before the story existed and persist them"""
    written = 0
    for row in rows:
        if await record_cost(row.model_copy(update={"story_id": story_id}), cost_logger):
            written += 1
    if rows:
        logger.info(f"💰 COST: Flushed {written}/{len(rows)} deferred rows for story {story_id}")
    return written


def summarize_story_costs(rows: list[CostRow]) -> StoryCostSummary:
    """Total and per-step breakdown, steps in the order they first appear"""
    totals: dict[str, float] = {}
    for row in rows:
        totals[row.step] = totals.get(row.step, 0.0) + float(row.cost_usd or 0.0)

    return StoryCostSummary(
        total_cost_usd=sum(totals.values()),
        has_rows=bool(rows),
        breakdown=[StepCost(step=step, cost_usd=cost) for step, cost in totals.items()],
    )
