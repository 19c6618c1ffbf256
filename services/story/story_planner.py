"""Story planning: StoryBible + BeatSheet + ContinuityLedger"""

import logging
import re
from collections.abc import Awaitable
from typing import Any, Callable, Optional

from langsmith import traceable
from models import (
    BeatPage,
    BeatSheet,
    ContinuityLedger,
    PlannerInput,
    StoryBible,
    StoryBibleCharacter,
    StoryPlan,
    StorySpark,
    StoryTone,
)

from shared.generation_cost_logger import CostRow, CostTracking
from shared.llm_client import DEFAULT_TEXT_MODEL, LLMClient, LLMError
from shared.structured_output import StructuredOutputError, call_json

logger = logging.getLogger(__name__)

CostCallback = Callable[[CostRow], Any]
LogCallback = Callable[[str, dict, dict], Awaitable[None]]

PLAN_SYSTEM_PROMPT = "You are a children's story planning system. Output strict JSON only."
DEFAULT_UNIVERSE_NAME = "Story Universe"

SPARK_RULES = {
    StorySpark.ADVENTURE: [
        "Clear external goal",
        "Escalating obstacles",
        "Environmental challenge",
        "Triumphant ending",
    ],
    StorySpark.MYSTERY: [
        "Puzzle or strange event",
        "At least one false assumption",
        "Clue progression",
        "Clear reveal",
    ],
    StorySpark.BRAVE: [
        "Internal fear",
        "Self-doubt moment",
        "Turning point",
        "Emotional growth resolution",
    ],
    StorySpark.FRIENDSHIP: ["Relationship tension", "Honest communication", "Restored bond"],
    StorySpark.SILLY: ["Increasing absurdity", "Rule-of-3 escalation", "Clever resolution"],
    StorySpark.DISCOVERY: ["Curiosity exploration", "Learning moment", "Awe-based ending"],
    StorySpark.HELPER: [
        "Someone in need",
        "Attempts that fail first",
        "Creative solve",
        "Gratitude resolution",
    ],
    StorySpark.MAGIC: ["Clear magic rule", "Consequence", "Emotional integration"],
}

SPARK_TITLE_NOUNS = {
    StorySpark.ADVENTURE: "Quest",
    StorySpark.MYSTERY: "Mystery",
    StorySpark.BRAVE: "Brave Step",
    StorySpark.FRIENDSHIP: "Friendship Fix",
    StorySpark.SILLY: "Silly Switch",
    StorySpark.DISCOVERY: "Discovery",
    StorySpark.HELPER: "Helping Plan",
    StorySpark.MAGIC: "Magic Rule",
}

# Generic titles the planner sometimes returns; replaced with a contextual one
BLOCKED_TITLES = {
    "a story universe adventure",
    "story universe adventure",
    "untitled",
    "untitled story",
}

FALLBACK_FORBIDDEN = ["gore", "horror", "cruelty", "explicit content"]

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9\s]")


def spark_rules(spark: StorySpark) -> list[str]:
    return list(SPARK_RULES[StorySpark(spark)])


def tone_from_spark(spark: StorySpark) -> StoryTone:
    spark = StorySpark(spark)
    if spark == StorySpark.SILLY:
        return StoryTone.SILLY
    if spark in (StorySpark.FRIENDSHIP, StorySpark.HELPER, StorySpark.DISCOVERY):
        return StoryTone.CALM
    return StoryTone.ADVENTUROUS


def page_count_from_length(length_minutes: int) -> int:
    return max(4, min(30, length_minutes * 2))


def _sanitize_words(text: str) -> list[str]:
    return [w for w in _NON_ALNUM.sub(" ", text).split() if w]


def _title_case(text: str) -> str:
    return " ".join(part[:1].upper() + part[1:].lower() for part in text.split())


def _universe_name(input: PlannerInput) -> str:
    return input.universe_name.strip() or DEFAULT_UNIVERSE_NAME


def _lead_name(input: PlannerInput) -> str:
    if input.kids:
        return input.kids[0].display_name
    if input.adults:
        return input.adults[0].display_name
    return "Family"


def build_contextual_title(input: PlannerInput, setting_hint: Optional[str] = None) -> str:
    """'{Lead}'s {Spark noun} in {Place}' built from the setting, prompt or universe"""
    source = (
        (setting_hint or "").strip() or input.optional_prompt.strip() or _universe_name(input)
    )
    place_words = _sanitize_words(source)[:3]
    place = _title_case(" ".join(place_words)) if place_words else DEFAULT_UNIVERSE_NAME
    return f"{_lead_name(input)}'s {SPARK_TITLE_NOUNS[StorySpark(input.story_spark)]} in {place}"


def pick_story_title(input: PlannerInput, raw_title: str, setting_hint: Optional[str] = None) -> str:
    normalized = (raw_title or "").strip()
    if not normalized or normalized.lower() in BLOCKED_TITLES:
        return build_contextual_title(input, setting_hint)
    return normalized


def build_character_context(input: PlannerInput) -> str:
    lines = []
    for kid in input.kids:
        parts = [
            f"Kid {kid.display_name}",
            f"age {kid.age}" if kid.age is not None else "",
            f"themes: {', '.join(kid.themes)}" if kid.themes else "",
            f"books: {', '.join(kid.books_we_like)}" if kid.books_we_like else "",
        ]
        lines.append("; ".join(p for p in parts if p))
    for adult in input.adults:
        parts = [
            f"Adult {adult.display_name}",
            f"persona: {adult.persona_label}" if adult.persona_label else "",
        ]
        lines.append("; ".join(p for p in parts if p))
    return "\n".join(lines)


def build_plan_prompt(input: PlannerInput) -> str:
    spark = StorySpark(input.story_spark)
    lines = [
        "Create a strict StoryBible + BeatSheet + ContinuityLedger JSON plan.",
        f"Story spark: {spark.value}",
        f"Tone: {tone_from_spark(spark).value}",
        f"Audience age: {input.audience_age}",
        f"Universe: {_universe_name(input)}",
        f"Page count: {page_count_from_length(input.length_minutes)}",
        f"Optional user prompt: {input.optional_prompt or 'none'}",
        "Spark arc rules:",
        *[f"- {rule}" for rule in spark_rules(spark)],
        "Characters context:",
        build_character_context(input),
        "Constraints:",
        "- Beat sheet pages must be exactly page_count entries.",
        "- Each page has clear beat goal and transition.",
        "- No forbidden scary/violent elements.",
        "- Keep to child-safe bedtime tone unless spark implies silly/adventure.",
        "Output only JSON with keys: story_bible_json, beat_sheet_json, continuity_ledger_json.",
    ]
    return "\n".join(lines)


def _fallback_beat(index: int, page_count: int) -> BeatPage:
    is_first = index == 0
    is_last = index == page_count - 1
    if is_first:
        goal = "Introduce the adventure and goal."
    elif is_last:
        goal = "Resolve the main challenge and wrap up warmly."
    else:
        goal = "Advance the quest with a new event and character choice."

    return BeatPage(
        page_number=index + 1,
        beat_goal=goal,
        must_include=["main character", "goal"] if is_first else ["forward progress"],
        must_not_include=["new named entities", "scary content"],
        cliffhanger_or_transition=(
            "End at peace." if is_last else "Transition smoothly to the next page with curiosity."
        ),
    )


def build_fallback_plan(input: PlannerInput) -> StoryPlan:
    """
    Deterministic plan used when the planner call fails.

    Satisfies every schema invariant (non-empty lists, exact page count), so
    downstream stages never need to know the plan came from here.
    """
    spark = StorySpark(input.story_spark)
    page_count = page_count_from_length(input.length_minutes)
    universe = _universe_name(input)
    character_names = [k.display_name for k in input.kids] + [a.display_name for a in input.adults]

    if character_names:
        characters = [
            StoryBibleCharacter(name=name, role="character", traits=["kind", "curious"])
            for name in character_names
        ]
        allowed_entities = [*character_names, universe]
    else:
        characters = [
            StoryBibleCharacter(name="The Explorer", role="main character", traits=["kind", "curious"])
        ]
        allowed_entities = [universe]

    bible = StoryBible(
        title=build_contextual_title(input, input.optional_prompt or universe),
        audience_age=input.audience_age,
        tone=tone_from_spark(spark),
        setting=input.optional_prompt.strip() or universe,
        rules=[
            "Keep names and identities consistent.",
            "No scary or violent content.",
            "End with a warm, satisfying resolution.",
            *spark_rules(spark),
        ],
        characters=characters,
        allowed_entities=allowed_entities,
        forbidden=list(FALLBACK_FORBIDDEN),
        ending_goal="Close with calm gratitude and bedtime comfort.",
    )
    beats = BeatSheet(
        page_count=page_count,
        pages=[_fallback_beat(i, page_count) for i in range(page_count)],
    )
    return StoryPlan(
        story_bible_json=bible,
        beat_sheet_json=beats,
        continuity_ledger_json=ContinuityLedger(),
    )


@traceable(run_type="chain", name="story-plan")
async def generate_story_plan(
    input: PlannerInput,
    story_id: Optional[str] = None,
    on_cost: Optional[CostCallback] = None,
    on_log: Optional[LogCallback] = None,
    llm: Optional[LLMClient] = None,
    model: str = DEFAULT_TEXT_MODEL,
) -> StoryPlan:
    """
    Plan a story, falling back to a deterministic plan on any failure.

    Args:
        input: Universe, cast, spark and length of the requested story
        story_id: Saved story id for cost attribution (None while unsaved)
        on_cost: Callback receiving one CostRow per model call
        on_log: Async callback receiving (step, payload, response)
        llm: Client override
        model: Text model id

    Returns:
        A StoryPlan whose beat sheet has exactly page_count_from_length() beats
    """
    spark = StorySpark(input.story_spark)
    page_count = page_count_from_length(input.length_minutes)

    try:
        plan = await call_json(
            StoryPlan,
            system=PLAN_SYSTEM_PROMPT,
            user=build_plan_prompt(input),
            temperature=0.2,
            max_tokens=2200,
            retries=2,
            tracking=CostTracking(story_id=story_id, step="plan", on_tracked=on_cost),
            llm=llm,
            model=model,
        )
        if plan.beat_sheet_json.page_count != page_count:
            logger.warning(
                f"⚠️ PLANNER: Plan returned {plan.beat_sheet_json.page_count} pages, "
                f"expected {page_count}; using fallback plan"
            )
            plan = build_fallback_plan(input)
        else:
            logger.info(f"📝 PLANNER: Planned {page_count} pages for {spark.value} story")
    except (StructuredOutputError, LLMError) as e:
        logger.warning(f"⚠️ PLANNER: Planning failed, using fallback plan: {e}")
        plan = build_fallback_plan(input)

    if on_log:
        await on_log(
            "plan", {"storySpark": spark.value, "pageCount": page_count}, {"plan": plan.to_json()}
        )
    return plan
