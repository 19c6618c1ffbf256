"""Final image prompt assembly: style bible, character bible, scene block, negatives"""

from typing import Optional

from models import IllustratedCharacter, SceneSpec, StoryContext

GLOBAL_ART_DIRECTION = "children's picture book illustration, clean shapes, soft shading"

NEGATIVE_CONSTRAINTS_BLOCK = "\n".join(
    [
        "No text, no words, no letters, no logos, no watermarks.",
        "Same art style as above; do not change medium, palette, or rendering style.",
        "Keep character facial features consistent across images.",
        "Avoid dramatic style shifts (anime, pixel art, oil painting, photorealism) unless style_bible explicitly says so.",
        "Child-safe, wholesome, age-appropriate.",
    ]
)

NO_CHARACTERS_LINE = "No named characters in this scene."
DEFAULT_ARC_SUMMARY = "warm family arc with clear beginning, challenge, and satisfying ending"


def build_image_prompt(style_bible: str, character_bible: str, scene_block: str) -> str:
    return "\n".join(
        [
            f"STYLE BIBLE (do not deviate):\n{style_bible}\n",
            f"CHARACTER BIBLE (keep stable across images; only outfit may change):\n{character_bible}\n",
            f"{scene_block}\n",
            f"NEGATIVE CONSTRAINTS:\n{NEGATIVE_CONSTRAINTS_BLOCK}",
        ]
    )


def build_character_bible_block(characters: list[IllustratedCharacter]) -> str:
    """
    One identity line per character, sorted by name.

    Sorting keeps the block byte-identical for the same cast, so prompt diffs
    between pages only show real changes.
    """
    if not characters:
        return NO_CHARACTERS_LINE

    lines = []
    for character in sorted(characters, key=lambda c: c.name):
        identity = character.identity.identity
        lines.append(
            f"{character.name}: identity hair={identity.hair}, eyes={identity.eyes}, "
            f"skin={identity.skin_tone}, face={identity.face_features}, "
            f"proportions={identity.body_proportions} "
            f"must_keep={'; '.join(identity.must_keep)} must_not={'; '.join(identity.must_not)}"
        )
    return "\n".join(lines)


def build_outfit_line(characters: list[IllustratedCharacter]) -> str:
    if not characters:
        return "none"
    entries = []
    for character in characters:
        if character.outfit is None:
            continue
        outfit = character.outfit.outfit
        accessories = ", ".join(outfit.accessories) or "none"
        entries.append(
            f"{character.name} | outfit top={outfit.top}, bottom={outfit.bottom}, "
            f"shoes={outfit.shoes}, accessories={accessories}, palette={', '.join(outfit.palette)}"
        )
    return " || ".join(entries) or "none"


def build_page_scene_block(
    scene: SceneSpec, context: StoryContext, characters: list[IllustratedCharacter]
) -> str:
    return ". ".join(
        [
            "SCENE BLOCK:",
            "kind=page",
            f"story spark: {context.story_spark or 'none'}",
            f"stage context: {context.stage or 'none'}",
            f"setting: {scene.setting}",
            f"action: {scene.action}",
            f"mood: {scene.mood}",
            f"time of day: {scene.time_of_day}",
            f"camera framing: {scene.camera_framing}",
            f"character outfits + props: {build_outfit_line(characters)}",
            "poster focus: readable action beat with child-safe emotional clarity",
        ]
    )


def build_key_motif(story_spark: Optional[str]) -> str:
    words = (story_spark or "adventure").split()
    return " ".join(words[:4]) or "storybook adventure"


def build_cover_scene_block(
    context: StoryContext, title: str, arc_summary: Optional[str], key_motif: str
) -> str:
    return ". ".join(
        [
            "SCENE BLOCK:",
            "kind=cover",
            f"title: {title}",
            f"arc summary: {arc_summary or DEFAULT_ARC_SUMMARY}",
            f"stage context: {context.stage or 'none'}",
            f"setting: {context.setting}",
            f"tone: {context.tone.value}",
            f"story spark: {context.story_spark or 'none'}",
            f"key motif: {key_motif}",
            "composition: iconic poster moment, inviting, high readability for children",
        ]
    )
