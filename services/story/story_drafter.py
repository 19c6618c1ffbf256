"""Per-beat drafting, continuity validation, ledger tracking and repetition rewrites"""

import json
import logging
from typing import Optional

from langsmith import traceable
from models import (
    BeatPage,
    ContinuityLedger,
    DraftPage,
    PageValidation,
    PlannerInput,
    StoryPipelineResult,
    StoryPlan,
    StorySpark,
)
from pydantic import BaseModel
from repetition import build_rewrite_prompt, detect_repetition, parse_rewrite_json
from story_length import WordTargets, count_words, get_word_targets
from story_pages import split_paragraphs
from story_planner import CostCallback, LogCallback, generate_story_plan, pick_story_title
from story_store import StoryStore

from shared.generation_cost_logger import CostTracking
from shared.llm_client import LLMClient, LLMError, llm_client
from shared.pipeline_config import DEFAULT_SETTINGS, PipelineSettings
from shared.structured_output import StructuredOutputError, call_json

logger = logging.getLogger(__name__)

PAGE_SYSTEM_PROMPT = "You write coherent children's picture book page prose."
VALIDATE_SYSTEM_PROMPT = "You validate children's story continuity. Output strict JSON only."
REGENERATE_SYSTEM_PROMPT = "You regenerate a constrained story page with strict continuity."
LEDGER_SYSTEM_PROMPT = "Extract concise continuity facts from story text. Output strict JSON only."
REWRITE_SYSTEM_PROMPT = (
    "You are an elite story editor for children's fiction. Return strict JSON only."
)
REPETITION_FIX_NOTE = "Eliminate trigram repetition and any repeated paragraphs."

# Varied closing sentences used to bring fallback prose up to length
FILLER_SENTENCES = [
    "They paused, listened, and noticed how the moonlight made everything feel a little safer.",
    "Each step taught them to breathe slowly, think clearly, and keep kindness at the center.",
    "By sharing ideas and encouraging one another, they turned every obstacle into a new chance to grow.",
    "A soft breeze carried the smell of warm bread from somewhere far away.",
    "Somewhere nearby a sleepy owl hooted once, as if cheering them on.",
    "Even the smallest choice felt important when they made it together.",
]

FALLBACK_OPENINGS = [
    "The evening light settled over {setting} as {lead} looked around with bright eyes.",
    "A gentle hush filled {setting}, and {lead} took a slow, steady breath.",
    "Stars began to peek out above {setting} while {lead} listened closely.",
    "The path through {setting} curved ahead, and {lead} followed it with care.",
    "A warm glow spread across {setting} as {lead} thought about what came next.",
]


class PageWordRange(BaseModel):
    min: int
    max: int


class DraftResult(BaseModel):
    pages: list[DraftPage]
    continuity_ledger: ContinuityLedger
    warnings: list[str] = []


def page_word_range(targets: WordTargets, page_count: int) -> PageWordRange:
    min_per_page = max(80, targets.min // page_count)
    return PageWordRange(min=min_per_page, max=max(min_per_page + 40, targets.max // page_count))


def merge_ledger(
    base: ContinuityLedger, update: ContinuityLedger, fact_cap: int = 60, thread_cap: int = 30
) -> ContinuityLedger:
    """Ordered dedupe of facts/threads, keeping only the most recent entries"""
    facts = list(dict.fromkeys([*base.established_facts, *update.established_facts]))
    threads = list(dict.fromkeys([*base.open_threads, *update.open_threads]))
    return ContinuityLedger(established_facts=facts[-fact_cap:], open_threads=threads[-thread_cap:])


def build_page_prompt(
    plan: StoryPlan,
    beat: BeatPage,
    ledger: ContinuityLedger,
    word_range: PageWordRange,
    recent_pages: list[DraftPage],
) -> str:
    bible = plan.story_bible_json
    recent_context = "\n\n".join(f"Page {p.page_number}: {p.text}" for p in recent_pages)
    lines = [
        f"Write page {beat.page_number} of {plan.beat_sheet_json.page_count}.",
        f"Target words for this page: {word_range.min}-{word_range.max}.",
        f"Beat goal: {beat.beat_goal}",
        f"Must include: {', '.join(beat.must_include) or 'none'}",
        f"Must not include: {', '.join(beat.must_not_include) or 'none'}",
        f"Transition goal: {beat.cliffhanger_or_transition}",
        f"Ending goal for full story: {bible.ending_goal}",
        f"Allowed entities: {', '.join(bible.allowed_entities)}",
        f"Forbidden elements: {', '.join(bible.forbidden)}",
        "Hard constraints:",
        "- no new named entities",
        "- no new world rules",
        "- keep tense and POV consistent",
        "- keep child-safe tone",
        f"Continuity facts: {' | '.join(ledger.established_facts)}",
        f"Open threads: {' | '.join(ledger.open_threads)}",
        f"Recent pages:\n{recent_context}" if recent_context else "",
        "Return only page prose text.",
    ]
    return "\n".join(line for line in lines if line)


def build_validation_prompt(page_text: str, plan: StoryPlan, ledger: ContinuityLedger) -> str:
    bible = plan.story_bible_json
    return "\n".join(
        [
            "Validate page text against story constraints.",
            "Check for drift/hallucination near ending.",
            "Return JSON: { ok, issues[], fixedText? }",
            "Rules:",
            "- no new named entities unless in allowed_entities",
            "- no new world rules",
            "- keep tense and POV consistent",
            "- keep child-safe tone",
            f"Allowed entities: {', '.join(bible.allowed_entities)}",
            f"Forbidden: {', '.join(bible.forbidden)}",
            f"Ledger facts: {' | '.join(ledger.established_facts)}",
            f"Open threads: {' | '.join(ledger.open_threads)}",
            "Page text:",
            page_text,
        ]
    )


def fallback_page_text(plan: StoryPlan, beat: BeatPage) -> str:
    """Deterministic page prose built from the beat, used when generation is unavailable"""
    bible = plan.story_bible_json
    lead = bible.characters[0].name
    opening = FALLBACK_OPENINGS[(beat.page_number - 1) % len(FALLBACK_OPENINGS)].format(
        setting=bible.setting, lead=lead
    )
    goal = beat.beat_goal.rstrip(".")
    goal = goal[:1].lower() + goal[1:]
    transition = beat.cliffhanger_or_transition.rstrip(".")
    transition = transition[:1].lower() + transition[1:]
    return (
        f"{opening} On page {beat.page_number}, the story had one clear job: {goal}. "
        f"{lead} smiled, gathered a little courage, and kept going, ready to {transition}."
    )


def pad_pages_to_minimum(
    pages: list[DraftPage], min_words: int, eligible_indexes: Optional[list[int]] = None
) -> list[DraftPage]:
    """
    Append filler sentences round-robin until the story reaches min_words.

    Only pages in eligible_indexes are padded. The number of pages never changes.
    """
    indexes = list(range(len(pages))) if eligible_indexes is None else list(eligible_indexes)
    if not indexes:
        return pages

    padded = [p.model_copy() for p in pages]
    total = sum(count_words(p.text) for p in padded)
    step = 0
    while total < min_words:
        target = padded[indexes[step % len(indexes)]]
        sentence = FILLER_SENTENCES[step % len(FILLER_SENTENCES)]
        target.text = f"{target.text} {sentence}".strip()
        total += count_words(sentence)
        step += 1
    return padded


def map_text_onto_pages(text: str, page_count: int) -> Optional[list[str]]:
    """
    Spread revised story paragraphs across exactly page_count pages.

    Returns None when the text has fewer paragraphs than pages.
    """
    paragraphs = split_paragraphs(text)
    if page_count < 1 or len(paragraphs) < page_count:
        return None

    base, extra = divmod(len(paragraphs), page_count)
    chunks = []
    start = 0
    for i in range(page_count):
        size = base + (1 if i < extra else 0)
        chunks.append("\n\n".join(paragraphs[start : start + size]))
        start += size
    return chunks


async def _validate_page(
    client: LLMClient,
    page_text: str,
    plan: StoryPlan,
    ledger: ContinuityLedger,
    tracking: CostTracking,
    model: str,
) -> tuple[str, list[str], bool]:
    validation = await call_json(
        PageValidation,
        system=VALIDATE_SYSTEM_PROMPT,
        user=build_validation_prompt(page_text, plan, ledger),
        temperature=0.1,
        max_tokens=1200,
        retries=1,
        tracking=tracking.for_step("page_validate"),
        llm=client,
        model=model,
    )
    if validation.ok:
        return page_text, [], True
    if validation.fixed_text:
        return validation.fixed_text, list(validation.issues), False
    return "", list(validation.issues), False


async def _extract_ledger_update(
    client: LLMClient, page_text: str, tracking: CostTracking, model: str
) -> ContinuityLedger:
    return await call_json(
        ContinuityLedger,
        system=LEDGER_SYSTEM_PROMPT,
        user="\n".join(
            [
                "From this page, extract new established facts and open threads.",
                "Avoid duplicates and keep statements short.",
                "Output JSON only with keys established_facts and open_threads.",
                page_text,
            ]
        ),
        temperature=0.1,
        max_tokens=600,
        retries=1,
        tracking=tracking.for_step("ledger_extract"),
        llm=client,
        model=model,
    )


@traceable(run_type="chain", name="story-draft-pages")
async def generate_pages_from_plan(
    input: PlannerInput,
    plan: StoryPlan,
    story_id: Optional[str] = None,
    on_cost: Optional[CostCallback] = None,
    on_log: Optional[LogCallback] = None,
    llm: Optional[LLMClient] = None,
    settings: PipelineSettings = DEFAULT_SETTINGS,
) -> DraftResult:
    """
    Draft one page per beat, strictly in order.

    Each page prompt carries the two most recent finished pages. A page goes
    generate -> validate -> (regenerate) -> ledger update. Provider failures
    degrade to deterministic prose and warnings; nothing here raises.

    Returns:
        DraftResult with exactly page_count pages
    """
    client = llm or llm_client
    model = settings.text_model
    warnings: list[str] = []
    page_count = plan.beat_sheet_json.page_count
    targets = get_word_targets(input.length_minutes)
    word_range = page_word_range(targets, page_count)

    ledger = plan.continuity_ledger_json
    pages: list[DraftPage] = []
    fallback_indexes: list[int] = []

    for beat in plan.beat_sheet_json.pages:
        tracking = CostTracking(
            story_id=story_id, page_number=beat.page_number, step="page_generate", on_tracked=on_cost
        )
        metadata = {
            "story_id": story_id or "",
            "step": "page_generate",
            "page_number": str(beat.page_number),
        }
        page_prompt = build_page_prompt(plan, beat, ledger, word_range, pages[-2:])

        try:
            page_text = (
                await client.generate(
                    system=PAGE_SYSTEM_PROMPT,
                    messages=[{"role": "user", "content": page_prompt}],
                    model=model,
                    temperature=0.6,
                    presence_penalty=0.5,
                    frequency_penalty=0.5,
                    max_tokens=900,
                    tracking=tracking,
                    metadata=metadata,
                )
            ).strip()
        except LLMError as e:
            logger.warning(f"⚠️ DRAFT: Page {beat.page_number} generation failed: {e}")
            page_text = ""

        if page_text:
            draft_text = page_text
            try:
                page_text, issues, ok = await _validate_page(
                    client, page_text, plan, ledger, tracking, model
                )
                if not ok and issues:
                    warnings.append(f"Page {beat.page_number} required continuity fix.")
            except (StructuredOutputError, LLMError) as e:
                logger.warning(f"⚠️ DRAFT: Page {beat.page_number} validation skipped: {e}")
                issues, ok = [], True
            page_text = page_text.strip()

            if not ok and not page_text:
                regen_prompt = "\n".join(
                    [
                        page_prompt,
                        f"Previous issues to fix: {' | '.join(issues)}",
                        "Regenerate page following all constraints exactly.",
                    ]
                )
                try:
                    page_text = (
                        await client.generate(
                            system=REGENERATE_SYSTEM_PROMPT,
                            messages=[{"role": "user", "content": regen_prompt}],
                            model=model,
                            temperature=0.4,
                            presence_penalty=0.4,
                            frequency_penalty=0.4,
                            max_tokens=900,
                            tracking=tracking.for_step("page_regenerate"),
                            metadata={**metadata, "step": "page_regenerate"},
                        )
                    ).strip()
                except LLMError as e:
                    logger.warning(f"⚠️ DRAFT: Page {beat.page_number} regeneration failed: {e}")

                # An unfixed draft still beats fallback prose
                page_text = page_text or draft_text

        if not page_text:
            warnings.append(f"Page {beat.page_number} used fallback prose.")
            fallback_indexes.append(len(pages))
            page_text = fallback_page_text(plan, beat)

        pages.append(DraftPage(page_number=beat.page_number, text=page_text))

        try:
            ledger_update = await _extract_ledger_update(client, page_text, tracking, model)
        except (StructuredOutputError, LLMError) as e:
            logger.warning(f"⚠️ DRAFT: Ledger update for page {beat.page_number} skipped: {e}")
            ledger_update = ContinuityLedger()
        ledger = merge_ledger(
            ledger, ledger_update, settings.ledger_fact_cap, settings.ledger_thread_cap
        )

        if on_log:
            await on_log(
                "page_generation",
                {"pageNumber": beat.page_number, "beatGoal": beat.beat_goal},
                {"pageText": page_text, "ledgerUpdate": ledger_update.model_dump()},
            )

    if fallback_indexes:
        pages = pad_pages_to_minimum(pages, targets.min, fallback_indexes)

    print(f"📖 DRAFT: Drafted {len(pages)} pages ({len(fallback_indexes)} fallback)", flush=True)
    return DraftResult(pages=pages, continuity_ledger=ledger, warnings=warnings)


async def rewrite_for_repetition(
    input: PlannerInput,
    plan: StoryPlan,
    pages: list[DraftPage],
    story_id: Optional[str] = None,
    on_cost: Optional[CostCallback] = None,
    llm: Optional[LLMClient] = None,
    settings: PipelineSettings = DEFAULT_SETTINGS,
) -> tuple[list[DraftPage], list[str]]:
    """
    One rewrite pass when the assembled story repeats itself.

    The revised story is mapped back onto the same pages; a revision with fewer
    paragraphs than pages is discarded. The result is re-checked once and only
    warned about if still repetitive.

    Returns:
        (pages, warnings)
    """
    client = llm or llm_client
    warnings: list[str] = []
    story_text = "\n\n".join(p.text for p in pages)
    report = detect_repetition(
        story_text,
        settings.repetition_trigram_threshold,
        settings.repetition_max_duplicate_paragraphs,
    )
    if not report.has_problem:
        return pages, warnings

    warnings.append(
        f"Repetition detected (ratio={report.trigram_repeat_ratio:.3f}, "
        f"repeatedParagraphs={report.repeated_paragraph_count})"
    )

    targets = get_word_targets(input.length_minutes)
    outline = {
        "story_bible": plan.story_bible_json.model_dump(mode="json"),
        "beat_sheet": plan.beat_sheet_json.model_dump(mode="json", by_alias=True),
    }
    prompt = build_rewrite_prompt(
        plan.story_bible_json.tone.value,
        outline,
        story_text,
        targets.min,
        targets.max,
        REPETITION_FIX_NOTE,
    )

    try:
        raw = await client.generate(
            system=REWRITE_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
            model=settings.text_model,
            temperature=0.8,
            presence_penalty=0.9,
            frequency_penalty=0.9,
            max_tokens=6500,
            tracking=CostTracking(story_id=story_id, step="story_rewrite", on_tracked=on_cost),
            metadata={"story_id": story_id or "", "step": "story_rewrite", "page_number": ""},
        )
        revised = parse_rewrite_json(raw)
        chunks = map_text_onto_pages(revised.revised_story, len(pages))
        if chunks is None:
            warnings.append("Rewrite discarded: revised story had fewer paragraphs than pages.")
        else:
            pages = [
                DraftPage(page_number=page.page_number, text=chunk)
                for page, chunk in zip(pages, chunks)
            ]
    except (LLMError, ValueError) as e:
        warnings.append(f"Second rewrite pass failed: {e}")

    recheck = detect_repetition(
        "\n\n".join(p.text for p in pages),
        settings.repetition_trigram_threshold,
        settings.repetition_max_duplicate_paragraphs,
    )
    if recheck.has_problem:
        warnings.append("Repetition remained after second rewrite pass.")

    return pages, warnings


@traceable(run_type="chain", name="story-pipeline")
async def run_story_pipeline(
    input: PlannerInput,
    story_id: Optional[str] = None,
    on_cost: Optional[CostCallback] = None,
    on_log: Optional[LogCallback] = None,
    llm: Optional[LLMClient] = None,
    settings: PipelineSettings = DEFAULT_SETTINGS,
) -> StoryPipelineResult:
    """
    Plan, draft, de-duplicate and measure a story.

    Always returns a complete story; every degraded step shows up in warnings.
    """
    plan = await generate_story_plan(
        input, story_id=story_id, on_cost=on_cost, on_log=on_log, llm=llm, model=settings.text_model
    )
    draft = await generate_pages_from_plan(
        input, plan, story_id=story_id, on_cost=on_cost, on_log=on_log, llm=llm, settings=settings
    )
    pages, rewrite_warnings = await rewrite_for_repetition(
        input, plan, draft.pages, story_id=story_id, on_cost=on_cost, llm=llm, settings=settings
    )
    warnings = [*draft.warnings, *rewrite_warnings]

    story_text = "\n\n".join(p.text for p in pages)
    word_count = count_words(story_text)
    targets = get_word_targets(input.length_minutes)
    if word_count < targets.min:
        warnings.append(f"Final story still below minimum words ({word_count} < {targets.min}).")
    elif word_count > targets.max * 1.2:
        warnings.append(
            f"Final story significantly above max words ({word_count} > {targets.max})."
        )

    bible = plan.story_bible_json
    return StoryPipelineResult(
        title=pick_story_title(input, bible.title, bible.setting),
        pages=pages,
        story_text=story_text,
        word_count=word_count,
        story_bible=bible,
        beat_sheet=plan.beat_sheet_json,
        continuity_ledger=draft.continuity_ledger,
        warnings=warnings,
    )


async def generate_story_pages(
    story_id: str,
    store: StoryStore,
    llm: Optional[LLMClient] = None,
    settings: PipelineSettings = DEFAULT_SETTINGS,
) -> list[DraftPage]:
    """
    Redraft a saved story's pages from its stored plan and replace them.

    Raises:
        StoryNotFoundError: Unknown story or missing plan
        ValueError: Stored plan no longer validates
    """
    story = await store.get_story(story_id)
    plan = await store.get_story_plan(story_id)

    input = PlannerInput(
        universe_name="Story Universe",
        audience_age=plan.story_bible_json.audience_age,
        story_spark=StorySpark.ADVENTURE,
        length_minutes=story["length_minutes"],
    )
    draft = await generate_pages_from_plan(input, plan, story_id=story_id, llm=llm, settings=settings)

    await store.replace_story_pages(
        story_id, [(page.page_number - 1, page.text) for page in draft.pages]
    )
    await store.update_continuity_ledger(story_id, draft.continuity_ledger)
    logger.info(
        f"✅ DRAFT: Regenerated {len(draft.pages)} pages for story {story_id} "
        f"({json.dumps(draft.warnings)})"
    )
    return draft.pages
