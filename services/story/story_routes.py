# services/story/story_routes.py
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from identity_service import IdentityResolver
from illustration_jobs import IllustrationJobRunner
from langsmith import traceable
from models import (
    AdultProfile,
    IllustrationStartResponse,
    KidProfile,
    OutfitLockRequest,
    OutfitLockResponse,
    PlannerInput,
    ProfileKind,
    StoryCostEntry,
    StoryGenerationRequest,
    StoryGenerationResponse,
    StoryPageResponse,
    StoryPagesResponse,
    StoryPlan,
    StorySaveRequest,
    StorySaveResponse,
)
from outfit_service import OutfitResolver
from page_illustration import PageIllustrator
from story_drafter import run_story_pipeline
from story_pages import build_story_page_texts
from story_planner import tone_from_spark
from story_store import StoryStore
from style_bible import generate_story_style_bible

from shared.database import Database, get_db
from shared.generation_cost_logger import (
    CostRow,
    GenerationCostLogger,
    StoryCostSummary,
    flush_deferred_costs,
    summarize_story_costs,
)
from shared.llm_pricing import load_pricing_from_db
from shared.pipeline_config import PipelineSettings, load_pipeline_settings
from shared.redis_client import get_optional_redis
from shared.storage_service import storage_service

router = APIRouter()


# Dependencies
async def get_story_store(db: Database = Depends(get_db)) -> StoryStore:
    return StoryStore(db)


async def get_pipeline_settings(db: Database = Depends(get_db)) -> PipelineSettings:
    # Refreshes model pricing overrides once the cache has expired
    await load_pricing_from_db(db)
    return await load_pipeline_settings(db, await get_optional_redis())


async def get_cost_logger(db: Database = Depends(get_db)) -> GenerationCostLogger:
    return GenerationCostLogger(db)


async def get_outfit_resolver(
    store: StoryStore = Depends(get_story_store),
    settings: PipelineSettings = Depends(get_pipeline_settings),
) -> OutfitResolver:
    return OutfitResolver(store, settings=settings)


async def get_illustration_runner(
    store: StoryStore = Depends(get_story_store),
    settings: PipelineSettings = Depends(get_pipeline_settings),
) -> IllustrationJobRunner:
    illustrator = PageIllustrator(
        store,
        IdentityResolver(store, settings=settings),
        OutfitResolver(store, settings=settings),
        settings=settings,
    )
    return IllustrationJobRunner(store, illustrator, settings=settings)


def _cost_entry(row: CostRow) -> StoryCostEntry:
    return StoryCostEntry(
        step=row.step,
        model=row.model,
        page_number=row.page_number,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        cost_usd=row.cost_usd,
    )


def _cost_row(entry: StoryCostEntry) -> CostRow:
    return CostRow(
        step=entry.step,
        model=entry.model,
        page_number=entry.page_number,
        input_tokens=entry.input_tokens,
        output_tokens=entry.output_tokens,
        total_tokens=entry.input_tokens + entry.output_tokens,
        cost_usd=entry.cost_usd,
    )


def _page_response(page: dict[str, Any]) -> StoryPageResponse:
    response = StoryPageResponse.model_validate(page)
    if not response.image_url and page.get("image_path"):
        response.image_url = storage_service.public_url(page["image_path"])
    return response


@router.post("/stories/generate", response_model=StoryGenerationResponse)
@traceable(run_type="chain", name="story-generate")
async def generate_story(
    request: StoryGenerationRequest,
    store: StoryStore = Depends(get_story_store),
    settings: PipelineSettings = Depends(get_pipeline_settings),
):
    """
    Plan and draft a story for a universe's cast without saving it.

    Costs are collected in memory and returned so the client can hand them
    back when the story is saved.
    """
    universe = await store.get_universe(request.universe_id)
    if not universe:
        raise HTTPException(status_code=404, detail="Universe not found")

    kids = await store.get_profiles(ProfileKind.KID.value, request.kid_profile_ids)
    adults = await store.get_profiles(ProfileKind.ADULT.value, request.adult_profile_ids)

    print(
        f"📖 STORY: Generating {request.story_spark.value} story for universe {universe['name']} "
        f"({len(kids)} kids, {len(adults)} adults, {request.length_minutes} min)",
        flush=True,
    )

    planner_input = PlannerInput(
        universe_name=universe["name"],
        kids=[
            KidProfile(
                id=kid["id"],
                display_name=kid["display_name"],
                age=kid.get("age"),
                themes=kid.get("themes") or [],
                books_we_like=kid.get("books_we_like") or [],
            )
            for kid in kids
        ],
        adults=[
            AdultProfile(
                id=adult["id"],
                display_name=adult["display_name"],
                persona_label=adult.get("persona_label"),
            )
            for adult in adults
        ],
        audience_age=request.audience_age,
        story_spark=request.story_spark,
        length_minutes=request.length_minutes,
        surprise_vs_guided=request.surprise_vs_guided,
        optional_prompt=request.optional_prompt,
    )

    deferred_costs: list[CostRow] = []

    async def log_step(step: str, payload: dict, response: dict) -> None:
        await store.log_generation(request.universe_id, None, step, payload, response)

    result = await run_story_pipeline(
        planner_input,
        story_id=None,
        on_cost=deferred_costs.append,
        on_log=log_step,
        settings=settings,
    )

    print(
        f"✅ STORY: '{result.title}' - {result.word_count} words, {len(result.pages)} pages, "
        f"{len(result.warnings)} warnings",
        flush=True,
    )

    return StoryGenerationResponse(
        title=result.title,
        storyText=result.story_text,
        pages=result.pages,
        storyBible=result.story_bible.model_dump(mode="json"),
        beatSheet=result.beat_sheet.model_dump(mode="json", by_alias=True),
        continuityLedger=result.continuity_ledger.model_dump(mode="json"),
        wordCount=result.word_count,
        sceneCount=len(result.pages),
        warnings=result.warnings,
        generationCosts=[_cost_entry(row) for row in deferred_costs],
    )


@router.post("/stories", response_model=StorySaveResponse)
async def save_story(
    request: StorySaveRequest,
    store: StoryStore = Depends(get_story_store),
    settings: PipelineSettings = Depends(get_pipeline_settings),
    cost_logger: GenerationCostLogger = Depends(get_cost_logger),
    runner: IllustrationJobRunner = Depends(get_illustration_runner),
):
    """Persist a generated story with its plan, cast, pages and style bible"""
    universe = await store.get_universe(request.universe_id)
    if not universe:
        raise HTTPException(status_code=404, detail="Universe not found")

    tone = tone_from_spark(request.story_spark)
    story_id = await store.create_story(
        {
            "universe_id": request.universe_id,
            "title": request.title,
            "content": request.story_text,
            "length_minutes": request.length_minutes,
            "audience_age": request.audience_age,
            "tone": tone.value,
            "story_spark": request.story_spark.value,
            "stage": request.stage or None,
            "prompt": {
                "spark": request.story_spark.value,
                "stage": request.stage,
                "optional_prompt": request.optional_prompt,
                "length_minutes": request.length_minutes,
            },
            "image_mode": request.image_mode.value,
            "status": "saved",
            "word_count": len(request.story_text.split()),
        }
    )

    style = await generate_story_style_bible(
        request.audience_age,
        tone,
        universe["name"],
        story_id=str(story_id),
        model=settings.text_model,
    )
    await store.update_story_style(story_id, style.style_bible, style.style_id)

    if request.story_bible and request.beat_sheet:
        await store.save_story_plan(
            story_id,
            StoryPlan(
                story_bible_json=request.story_bible,
                beat_sheet_json=request.beat_sheet,
                continuity_ledger_json=request.continuity_ledger or {},
            ),
        )

    await store.add_story_characters(
        story_id,
        [(ProfileKind.KID.value, pid) for pid in request.kid_profile_ids]
        + [(ProfileKind.ADULT.value, pid) for pid in request.adult_profile_ids],
    )

    if request.pages:
        page_texts = [(page.page_number - 1, page.text) for page in request.pages]
    else:
        page_texts = [
            (page.page_index, page.text)
            for page in build_story_page_texts(request.story_text, request.length_minutes)
        ]
    await store.insert_story_pages_ignore_duplicates(story_id, page_texts)

    await flush_deferred_costs(
        str(story_id), [_cost_row(entry) for entry in request.generation_costs], cost_logger
    )

    started = False
    if request.generate_illustrations:
        started = (await runner.start_story_illustration_generation(story_id))["started"]

    print(f"💾 STORY: Saved story {story_id} ({len(page_texts)} pages, style {style.style_id})", flush=True)
    return StorySaveResponse(
        story_id=story_id,
        page_count=len(page_texts),
        style_id=style.style_id,
        illustrations_started=started,
    )


@router.post("/stories/{story_id}/illustrations", response_model=IllustrationStartResponse)
async def start_illustrations(
    story_id: UUID, runner: IllustrationJobRunner = Depends(get_illustration_runner)
):
    result = await runner.start_story_illustration_generation(story_id)
    return IllustrationStartResponse(started=result["started"])


@router.get("/stories/{story_id}/pages", response_model=StoryPagesResponse)
async def list_story_pages(story_id: UUID, store: StoryStore = Depends(get_story_store)):
    await store.get_story(story_id)
    pages = await store.list_story_pages(story_id)
    return StoryPagesResponse(story_id=story_id, pages=[_page_response(page) for page in pages])


@router.post("/stories/{story_id}/illustrations/{page_index}", response_model=StoryPageResponse)
async def regenerate_page_illustration(
    story_id: UUID,
    page_index: int,
    store: StoryStore = Depends(get_story_store),
    runner: IllustrationJobRunner = Depends(get_illustration_runner),
):
    """Re-illustrate one page now; the page row carries the outcome"""
    if page_index < 0:
        raise HTTPException(status_code=400, detail="page_index must be >= 0")
    await runner.regenerate_story_page(story_id, page_index)
    return _page_response(await store.get_story_page(story_id, page_index))


@router.put(
    "/stories/{story_id}/outfits/{profile_kind}/{profile_id}/lock",
    response_model=OutfitLockResponse,
)
async def set_outfit_lock(
    story_id: UUID,
    profile_kind: ProfileKind,
    profile_id: UUID,
    request: OutfitLockRequest,
    outfits: OutfitResolver = Depends(get_outfit_resolver),
):
    outfit = await outfits.set_outfit_lock(story_id, profile_kind, profile_id, request.locked)
    if outfit is None:
        raise HTTPException(status_code=404, detail="Outfit not found")
    return OutfitLockResponse(
        story_id=story_id,
        profile_kind=profile_kind,
        profile_id=profile_id,
        outfit_lock=outfit.outfit_lock,
    )


@router.get("/stories/{story_id}/costs", response_model=StoryCostSummary)
async def get_story_costs(
    story_id: UUID,
    store: StoryStore = Depends(get_story_store),
    cost_logger: GenerationCostLogger = Depends(get_cost_logger),
):
    await store.get_story(story_id)
    return summarize_story_costs(await cost_logger.list_costs(str(story_id)))
