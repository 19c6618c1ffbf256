import re
import uuid

import pytest
from conftest import FakeLLM
from image_generation_service import (
    ImageGenerationError,
    OpenAIImageClient,
    decode_image,
    get_cover_image_settings,
    get_page_image_settings,
)
from image_prompt import (
    DEFAULT_ARC_SUMMARY,
    NO_CHARACTERS_LINE,
    build_character_bible_block,
    build_cover_scene_block,
    build_image_prompt,
    build_key_motif,
    build_outfit_line,
    build_page_scene_block,
)
from models import (
    IdentityBibleSpec,
    IllustratedCharacter,
    ImageMode,
    OutfitSpec,
    ProfileKind,
    ResolvedIdentity,
    ResolvedOutfit,
    SceneSpec,
    StoryContext,
    StoryTone,
)
from style_bible import (
    build_style_id,
    fallback_style_bible,
    generate_story_style_bible,
    get_style_preset_for_age,
    normalize_style_age,
)

from shared.llm_client import LLMError


def _character(name: str, hair: str = "curly brown", with_outfit: bool = True) -> IllustratedCharacter:
    profile_id = uuid.uuid4()
    identity = ResolvedIdentity(
        identity_bible_id=uuid.uuid4(),
        profile_kind=ProfileKind.KID,
        profile_id=profile_id,
        identity=IdentityBibleSpec(
            hair=hair,
            eyes="brown",
            skin_tone="warm tan",
            face_features="round face, freckles",
            body_proportions="child proportions",
            must_keep=["freckles"],
            must_not=["glasses"],
        ),
    )
    outfit = (
        ResolvedOutfit(
            id=uuid.uuid4(),
            outfit=OutfitSpec(
                top="yellow raincoat",
                bottom="blue jeans",
                shoes="red boots",
                accessories=[],
                palette=["yellow", "blue"],
            ),
        )
        if with_outfit
        else None
    )
    return IllustratedCharacter(
        name=name, profile_kind=ProfileKind.KID, profile_id=profile_id, identity=identity, outfit=outfit
    )


# Style bible
@pytest.mark.parametrize(
    "age,key", [(2, "age2-4"), (4, "age2-4"), (6, "age5-7"), (9, "age8-10"), (12, "age11-13"), (15, "teen")]
)
def test_style_preset_for_age(age, key):
    assert get_style_preset_for_age(age).key == key


def test_normalize_style_age_clamps_and_rounds():
    assert normalize_style_age(1) == 2
    assert normalize_style_age(6.5) == 7
    assert normalize_style_age(40) == 18


def test_fallback_style_bible_and_id_are_deterministic():
    preset = get_style_preset_for_age(6)
    bible = fallback_style_bible(preset, StoryTone.CALM)

    assert len(bible.splitlines()) == 10
    assert bible.startswith(f"Rendering: {preset.base}.")
    assert "Lighting mood: soft cozy lighting" in bible

    style_id = build_style_id(6, StoryTone.CALM, bible)
    assert re.fullmatch(r"age5-7-calm-v1-[0-9a-f]{8}", style_id)
    assert build_style_id(6, StoryTone.CALM, bible) == style_id
    assert build_style_id(6, StoryTone.CALM, bible + "!") != style_id


@pytest.mark.asyncio
async def test_style_bible_offline_uses_preset(offline_llm: FakeLLM):
    style = await generate_story_style_bible(6, StoryTone.SILLY, "Maple Street", llm=offline_llm)

    assert style.style_bible == fallback_style_bible(get_style_preset_for_age(6), StoryTone.SILLY)
    assert style.style_id.startswith("age5-7-silly-v1-")
    assert offline_llm.calls == []


@pytest.mark.asyncio
async def test_style_bible_uses_refined_lines():
    refined = "\n".join(f"  Rule {i}: keep it soft  " for i in range(16))
    llm = FakeLLM([refined])

    style = await generate_story_style_bible(9, StoryTone.ADVENTUROUS, "Maple Street", llm=llm, story_id="s-1")

    lines = style.style_bible.splitlines()
    assert len(lines) == 14
    assert lines[0] == "Rule 0: keep it soft"
    assert style.style_id.startswith("age8-10-adventurous-v1-")
    assert llm.calls[0]["tracking"].step == "style_bible_generate"
    assert llm.calls[0]["tracking"].story_id == "s-1"


@pytest.mark.asyncio
@pytest.mark.parametrize("response", ["Too\nshort", LLMError("LLM call failed: 500", status_code=500)])
async def test_style_bible_keeps_preset_on_bad_refinement(response):
    style = await generate_story_style_bible(3, StoryTone.CALM, "Maple Street", llm=FakeLLM([response]))
    assert style.style_bible == fallback_style_bible(get_style_preset_for_age(3), StoryTone.CALM)


# Prompt assembly
def test_character_bible_block_is_sorted_by_name():
    block = build_character_bible_block([_character("Zoe", hair="black bob"), _character("Ari")])

    lines = block.splitlines()
    assert lines[0].startswith("Ari: identity hair=curly brown, eyes=brown")
    assert lines[1].startswith("Zoe: identity hair=black bob")
    assert "must_keep=freckles must_not=glasses" in lines[0]
    assert build_character_bible_block([]) == NO_CHARACTERS_LINE


def test_outfit_line_skips_characters_without_outfits():
    line = build_outfit_line([_character("Ari"), _character("Zoe", with_outfit=False)])

    assert line == (
        "Ari | outfit top=yellow raincoat, bottom=blue jeans, shoes=red boots, "
        "accessories=none, palette=yellow, blue"
    )
    assert build_outfit_line([_character("Zoe", with_outfit=False)]) == "none"
    assert build_outfit_line([]) == "none"


def test_page_scene_block():
    scene = SceneSpec(
        setting="moonlit garden",
        action="Ari waters a glowing flower",
        mood="wonder",
        time_of_day="night",
        camera_framing="wide shot",
    )
    block = build_page_scene_block(scene, StoryContext(setting="Willow Hollow"), [_character("Ari")])

    assert block.startswith("SCENE BLOCK:. kind=page. story spark: none. stage context: none")
    assert "setting: moonlit garden" in block
    assert "camera framing: wide shot" in block
    assert "character outfits + props: Ari | outfit top=yellow raincoat" in block


def test_cover_scene_block_defaults():
    context = StoryContext(setting="Willow Hollow", tone=StoryTone.SILLY, story_spark="silly")
    block = build_cover_scene_block(context, "The Lantern Walk", None, build_key_motif("silly"))

    assert "kind=cover" in block
    assert "title: The Lantern Walk" in block
    assert f"arc summary: {DEFAULT_ARC_SUMMARY}" in block
    assert "tone: silly" in block
    assert "key motif: silly" in block


@pytest.mark.parametrize(
    "spark,motif",
    [(None, "adventure"), ("", "adventure"), ("   ", "storybook adventure"), ("a b c d e", "a b c d")],
)
def test_build_key_motif(spark, motif):
    assert build_key_motif(spark) == motif


def test_image_prompt_section_order():
    prompt = build_image_prompt("STYLE RULES", "CAST LINES", "SCENE BLOCK: kind=page")

    positions = [
        prompt.index("STYLE BIBLE (do not deviate):\nSTYLE RULES"),
        prompt.index("CHARACTER BIBLE"),
        prompt.index("SCENE BLOCK: kind=page"),
        prompt.index("NEGATIVE CONSTRAINTS:"),
    ]
    assert positions == sorted(positions)
    assert "No text, no words" in prompt


# Image settings
def test_image_settings_by_mode():
    assert get_page_image_settings(ImageMode.FAST).model == "gpt-image-1-mini"
    assert get_page_image_settings(ImageMode.FAST).quality == "low"
    assert get_page_image_settings(ImageMode.BEST).size == "1536x1024"
    assert get_cover_image_settings(ImageMode.FAST).quality == "medium"
    assert get_cover_image_settings("best").model == "gpt-image-1"


def test_decode_image():
    assert decode_image("aGVsbG8=") == b"hello"


@pytest.mark.asyncio
async def test_image_client_requires_api_key():
    with pytest.raises(ImageGenerationError, match="OPENAI_API_KEY"):
        await OpenAIImageClient().generate("a prompt", get_page_image_settings(ImageMode.FAST))


def test_image_errors_are_llm_errors_with_status():
    error = ImageGenerationError("Image generation failed: 429", status_code=429)
    assert isinstance(error, LLMError)
    assert error.status_code == 429
