"""Per-story illustration style bible, derived from audience age and tone"""

import hashlib
import logging
from typing import Optional

from models import StoryTone
from pydantic import BaseModel
from story_length import round_half_up

from shared.generation_cost_logger import CostTracking
from shared.llm_client import DEFAULT_TEXT_MODEL, LLMClient, LLMError, llm_client

logger = logging.getLogger(__name__)

STYLE_SYSTEM_PROMPT = (
    "You create reusable illustration style bibles for children's story images. "
    "Output plain text only."
)


class StylePreset(BaseModel):
    key: str
    label: str
    base: str


class StyleBible(BaseModel):
    style_bible: str
    style_id: str


STYLE_PRESETS = [
    (
        4,
        StylePreset(
            key="age2-4",
            label="Age 2-4",
            base="simple bright cartoon illustration, clean outlines, soft gradients, friendly proportions",
        ),
    ),
    (
        7,
        StylePreset(
            key="age5-7",
            label="Age 5-7",
            base="storybook illustration, slightly more detail, watercolor/gouache feel",
        ),
    ),
    (
        10,
        StylePreset(
            key="age8-10",
            label="Age 8-10",
            base="semi-realistic illustrated, more detailed environments, cinematic lighting but still friendly",
        ),
    ),
    (
        13,
        StylePreset(
            key="age11-13",
            label="Age 11-13",
            base="more realistic / graphic novel / cinematic realism (still kid-appropriate), richer contrast",
        ),
    ),
]

TEEN_PRESET = StylePreset(
    key="teen",
    label="Teen",
    base="near-realistic / film still look, shallow depth of field, more mature composition",
)


def get_style_preset_for_age(age: int) -> StylePreset:
    for max_age, preset in STYLE_PRESETS:
        if age <= max_age:
            return preset
    return TEEN_PRESET


def tone_modifier(tone: StoryTone) -> str:
    tone = StoryTone(tone)
    if tone == StoryTone.CALM:
        return "soft cozy lighting, gentle contrast, bedtime-safe warmth"
    if tone == StoryTone.SILLY:
        return "playful exaggeration, cheerful color rhythm, lively but readable compositions"
    return "adventurous energy, dynamic framing, vivid but child-safe atmosphere"


def fallback_style_bible(preset: StylePreset, tone: StoryTone) -> str:
    lines = [
        f"Rendering: {preset.base}.",
        "Line quality: clean, consistent linework with stable edge thickness.",
        "Shading: soft diffuse shading only, no harsh realism jumps.",
        "Texture: subtle paper-like texture; avoid noisy grain.",
        "Palette vibe: Toy Box Adventure palette anchored by warm orange, playful teal, sunny gold, soft cyan, and story navy.",
        f"Lighting mood: {tone_modifier(tone)}.",
        "Camera defaults: kid-friendly framing, readable wide/medium shots, clear subject separation.",
        "Character rendering: keep face shape, eye style, skin tone, and hair identity stable in every image.",
        "Environment rendering: cohesive world materials and brush behavior across all pages.",
        "Composition: balanced focal point, uncluttered foreground, storybook clarity.",
    ]
    return "\n".join(lines)


def normalize_style_age(age: float) -> int:
    return max(2, min(18, round_half_up(age)))


def build_style_id(age: int, tone: StoryTone, style_bible: str) -> str:
    preset = get_style_preset_for_age(age)
    digest = hashlib.sha1(style_bible.encode("utf-8")).hexdigest()[:8]
    return f"{preset.key}-{StoryTone(tone).value}-v1-{digest}"


async def generate_story_style_bible(
    audience_age: int,
    tone: StoryTone,
    universe_name: str,
    llm: Optional[LLMClient] = None,
    story_id: Optional[str] = None,
    model: str = DEFAULT_TEXT_MODEL,
) -> StyleBible:
    """
    Build the style bible shared by a story's cover and pages.

    Starts from the deterministic preset text and, when a model is available,
    swaps in a refined 8-14 line version. Any refinement failure keeps the
    deterministic text.
    """
    client = llm or llm_client
    tone = StoryTone(tone)
    age = normalize_style_age(audience_age)
    preset = get_style_preset_for_age(age)
    style_bible = fallback_style_bible(preset, tone)

    if client.is_configured():
        try:
            refined = await client.generate(
                system=STYLE_SYSTEM_PROMPT,
                messages=[
                    {
                        "role": "user",
                        "content": "\n".join(
                            [
                                "Create a style bible block for one story.",
                                "Return 8-14 short lines.",
                                "No scene content, no character names, no plot elements.",
                                "Only stable style rules that can be reused for cover and all pages.",
                                f"Age preset: {preset.label}.",
                                f"Deterministic base style: {preset.base}.",
                                f"Tone: {tone.value}.",
                                f"Universe context: {universe_name}.",
                            ]
                        ),
                    }
                ],
                model=model,
                temperature=0.2,
                presence_penalty=0,
                frequency_penalty=0,
                max_tokens=350,
                tracking=CostTracking(story_id=story_id, step="style_bible_generate"),
            )
            lines = [line.strip() for line in refined.splitlines() if line.strip()][:14]
            if len(lines) >= 8:
                style_bible = "\n".join(lines)
            else:
                logger.info(f"🎨 STYLE: Refined style bible too short ({len(lines)} lines), keeping preset")
        except LLMError as e:
            logger.warning(f"⚠️ STYLE: Style bible refinement failed, keeping preset: {e}")

    return StyleBible(style_bible=style_bible, style_id=build_style_id(age, tone, style_bible))
