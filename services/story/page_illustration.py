"""Single page and cover illustration: scene, cast, prompt, image, upload"""

import logging
from typing import Any, Optional
from uuid import UUID

from identity_service import IdentityResolver
from image_generation_service import (
    ImageGenerationError,
    ImageSettings,
    OpenAIImageClient,
    decode_image,
    get_cover_image_settings,
    get_page_image_settings,
    image_client,
)
from image_prompt import (
    GLOBAL_ART_DIRECTION,
    build_character_bible_block,
    build_cover_scene_block,
    build_image_prompt,
    build_key_motif,
    build_page_scene_block,
)
from langsmith import traceable
from models import (
    IllustratedCharacter,
    ImageMode,
    ProfileKind,
    SceneSpec,
    StoryContext,
    StoryTone,
)
from outfit_service import OutfitResolver
from pydantic import BaseModel, ValidationError
from story_store import StoryStore

from shared.generation_cost_logger import CostTracking
from shared.json_utils import parse_jsonb_field
from shared.llm_client import LLMClient, llm_client
from shared.pipeline_config import DEFAULT_SETTINGS, PipelineSettings
from shared.storage_service import StorageService, storage_service
from shared.structured_output import StructuredOutputError, parse_json_object_flexible

logger = logging.getLogger(__name__)

MISSING_STYLE_BIBLE = "Missing style_bible"

SCENE_SYSTEM_PROMPT = (
    "Extract concise scene metadata for illustration prompts. "
    "Output strict JSON only and do not invent plot."
)

SCENE_SCHEMA_HINT = "\n".join(
    [
        "{",
        '  "setting": "string",',
        '  "action": "string",',
        '  "mood": "string",',
        '  "time_of_day": "string",',
        '  "camera_framing": "string"',
        "}",
    ]
)

SCENE_EXTRACT_ATTEMPTS = 2

DEFAULT_SCENE = SceneSpec(
    setting="cozy story world",
    action="characters continue their gentle adventure",
    mood="warm and hopeful",
    time_of_day="evening",
    camera_framing="medium shot",
)


class MissingStyleBibleError(Exception):
    """The story has no style bible; nothing can be illustrated until it does"""

    def __init__(self):
        super().__init__(MISSING_STYLE_BIBLE)


class StoryCharacterRef(BaseModel):
    story_character_id: UUID
    name: str
    profile_kind: ProfileKind
    profile_id: UUID


class IllustrationSubject(BaseModel):
    """Everything about a story that every page and the cover share"""

    story_id: UUID
    title: str
    universe_id: Optional[UUID] = None
    style_bible: str
    style_id: str
    arc_summary: Optional[str] = None
    characters: list[StoryCharacterRef] = []
    context: StoryContext


def _prompt_text(prompt: dict[str, Any], key: str) -> str:
    value = prompt.get(key)
    return value.strip() if isinstance(value, str) else ""


def parse_cached_scene(raw: Any) -> Optional[SceneSpec]:
    if not raw:
        return None
    try:
        return SceneSpec.model_validate(parse_jsonb_field(raw, field_name="scene_json"))
    except ValidationError:
        return None


async def extract_scene_from_page_text(
    page_text: str,
    story_id: Optional[str] = None,
    page_number: Optional[int] = None,
    llm: Optional[LLMClient] = None,
    model: str = DEFAULT_SETTINGS.text_model,
) -> SceneSpec:
    """
    Pull setting/action/mood/time/framing out of one page of prose.

    Without an API key the deterministic DEFAULT_SCENE is returned.

    Raises:
        StructuredOutputError: Two attempts without a valid scene
        LLMError: Provider failure
    """
    client = llm or llm_client
    if not client.is_configured():
        return DEFAULT_SCENE

    user = "\n".join(
        [
            "Extract scene JSON from this page text.",
            "Schema:",
            SCENE_SCHEMA_HINT,
            "Page text:",
            page_text,
        ]
    )
    tracking = CostTracking(story_id=story_id, page_number=page_number, step="scene_extract")

    for attempt in range(SCENE_EXTRACT_ATTEMPTS):
        raw = await client.generate(
            system=SCENE_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": user}],
            model=model,
            temperature=0.2,
            presence_penalty=0,
            frequency_penalty=0,
            tracking=tracking,
        )
        try:
            return SceneSpec.model_validate(parse_json_object_flexible(raw))
        except (ValueError, ValidationError) as e:
            logger.info(f"🔧 SCENE: Attempt {attempt + 1} for page {page_number} invalid: {e}")

    raise StructuredOutputError("Scene extraction failed schema validation after retry.")


def detect_appearing_characters(
    page_text: str, characters: list[StoryCharacterRef]
) -> list[StoryCharacterRef]:
    """Characters named in the text (case-insensitive); everyone when nobody is named"""
    lower = page_text.lower()
    found = [c for c in characters if c.name.lower() in lower]
    return found or list(characters)


class PageIllustrator:
    """Builds prompts and renders images for one story's pages and cover"""

    def __init__(
        self,
        store: StoryStore,
        identities: IdentityResolver,
        outfits: OutfitResolver,
        images: Optional[OpenAIImageClient] = None,
        blob_store: Optional[StorageService] = None,
        llm: Optional[LLMClient] = None,
        settings: PipelineSettings = DEFAULT_SETTINGS,
    ):
        self.store = store
        self.identities = identities
        self.outfits = outfits
        self.images = images or image_client
        self.blob_store = blob_store or storage_service
        self.llm = llm or llm_client
        self.settings = settings

    async def load_story_and_characters(self, story_id) -> IllustrationSubject:
        """
        Raises:
            StoryNotFoundError: Unknown story
            MissingStyleBibleError: Story has no style bible or style id
        """
        story = await self.store.get_story(story_id)
        if not story.get("style_bible") or not story.get("style_id"):
            raise MissingStyleBibleError()

        try:
            plan = await self.store.get_story_plan(story_id)
            bible_setting = plan.story_bible_json.setting
        except (LookupError, ValueError):
            bible_setting = ""

        prompt = parse_jsonb_field(story.get("prompt"), field_name="prompt")
        stage = _prompt_text(prompt, "stage")
        spark = _prompt_text(prompt, "spark")

        rows = await self.store.list_story_characters(story_id)
        characters = [
            StoryCharacterRef(
                story_character_id=row["id"],
                name=row.get("display_name") or row["character_type"].title(),
                profile_kind=ProfileKind(row["character_type"]),
                profile_id=row["character_id"],
            )
            for row in rows
            if row["character_type"] in (ProfileKind.KID.value, ProfileKind.ADULT.value)
            and row.get("character_id")
        ]

        return IllustrationSubject(
            story_id=story["id"],
            title=story["title"],
            universe_id=story.get("universe_id"),
            style_bible=story["style_bible"],
            style_id=story["style_id"],
            arc_summary=story.get("arc_summary"),
            characters=characters,
            context=StoryContext(
                setting=bible_setting.strip() or stage or "Story Universe",
                tone=StoryTone(story.get("tone") or StoryTone.CALM.value),
                stage=stage,
                story_spark=spark,
            ),
        )

    async def _page_scene(self, page: dict[str, Any]) -> SceneSpec:
        scene = parse_cached_scene(page.get("scene_json"))
        if scene is None:
            scene = await extract_scene_from_page_text(
                page["text"],
                story_id=str(page["story_id"]),
                page_number=page["page_index"] + 1,
                llm=self.llm,
                model=self.settings.text_model,
            )
            await self.store.update_page_scene(page["id"], scene.model_dump())
        return scene

    async def _render(
        self, prompt: str, settings: ImageSettings, tracking: CostTracking, path: str, empty_message: str
    ) -> str:
        b64 = await self.images.generate(prompt, settings, tracking)
        if not b64:
            raise ImageGenerationError(empty_message)
        return await self.blob_store.upload(path, decode_image(b64), "image/png")

    @traceable(run_type="chain", name="page-illustration")
    async def generate_page_image(
        self, page: dict[str, Any], mode: ImageMode = ImageMode.FAST
    ) -> dict[str, Any]:
        """
        Illustrate one stored page.

        Args:
            page: story_pages row (id, story_id, page_index, text, scene_json)
            mode: fast or best image settings

        Returns:
            Dict ready for StoryStore.mark_page_ready

        Raises:
            MissingStyleBibleError: Story has no style bible
            StructuredOutputError: Scene could not be extracted
            LLMError: Any provider failure, including ImageGenerationError
            StorageError: Upload failed
        """
        story_id = str(page["story_id"])
        page_number = page["page_index"] + 1

        scene = await self._page_scene(page)
        subject = await self.load_story_and_characters(story_id)
        appearing_ids = {
            c.story_character_id for c in detect_appearing_characters(page["text"], subject.characters)
        }

        cast: list[IllustratedCharacter] = []
        assembled: list[dict[str, Any]] = []
        for ref in subject.characters:
            identity = await self.identities.get_or_create_identity_bible(
                ref.profile_kind, ref.profile_id, story_id=story_id, page_number=page_number
            )
            outfit = await self.outfits.get_or_create_story_outfit(
                story_id, ref.profile_kind, ref.profile_id, subject.context, page_number=page_number
            )
            await self.store.update_story_character_refs(
                story_id, ref.profile_kind.value, ref.profile_id, identity.identity_bible_id, outfit.id
            )

            portrait = identity.reference_images[0] if identity.reference_images else None
            cast.append(
                IllustratedCharacter(
                    name=ref.name,
                    profile_kind=ref.profile_kind,
                    profile_id=ref.profile_id,
                    identity=identity,
                    outfit=outfit,
                )
            )
            assembled.append(
                {
                    "story_character_id": str(ref.story_character_id),
                    "identity_bible_id": str(identity.identity_bible_id),
                    "outfit_id": str(outfit.id),
                    "name": ref.name,
                    "identity": identity.identity.model_dump(),
                    "outfit": outfit.outfit.model_dump(),
                    "portrait_ref": portrait.image_url if portrait else None,
                    "used_ref_id": str(portrait.id) if portrait else None,
                }
            )

        character_bible = build_character_bible_block(cast)
        scene_block = build_page_scene_block(
            scene,
            subject.context,
            [c for c, ref in zip(cast, subject.characters) if ref.story_character_id in appearing_ids],
        )
        final_prompt = build_image_prompt(subject.style_bible, character_bible, scene_block)
        referenced_image_ids = [c["portrait_ref"] for c in assembled if c["portrait_ref"]]

        settings = get_page_image_settings(mode)
        image_path = f"{story_id}/page-{page['page_index']}.png"
        image_url = await self._render(
            final_prompt,
            settings,
            CostTracking(story_id=story_id, page_number=page_number, step="image_generate"),
            image_path,
            "Page image generation returned empty image data.",
        )

        prompt_json = {
            "style_id": subject.style_id,
            "style_bible": subject.style_bible,
            "character_bible": character_bible,
            "scene_block": scene_block,
            "global_art_direction": GLOBAL_ART_DIRECTION,
            "scene": scene.model_dump(),
            "story_context": subject.context.model_dump(mode="json"),
            "characters": assembled,
            "final_prompt": final_prompt,
            "referenced_image_ids": referenced_image_ids,
        }

        return {
            "image_path": image_path,
            "image_url": image_url,
            "image_prompt": final_prompt,
            "image_prompt_json": prompt_json,
            "prompt_json": prompt_json,
            "scene_json": scene.model_dump(),
            "image_model": settings.model,
            "image_quality": settings.quality,
            "image_size": settings.size,
            "used_reference_image_ids": [c["used_ref_id"] for c in assembled if c["used_ref_id"]],
        }

    async def generate_cover_image(
        self, story_id, mode: ImageMode = ImageMode.FAST
    ) -> dict[str, Any]:
        """Cover art from identities only; outfits stay a page concern"""
        story_id = str(story_id)
        subject = await self.load_story_and_characters(story_id)

        cast = []
        for ref in subject.characters:
            identity = await self.identities.get_or_create_identity_bible(
                ref.profile_kind, ref.profile_id, story_id=story_id
            )
            cast.append(
                IllustratedCharacter(
                    name=ref.name,
                    profile_kind=ref.profile_kind,
                    profile_id=ref.profile_id,
                    identity=identity,
                )
            )

        character_bible = build_character_bible_block(cast)
        scene_block = build_cover_scene_block(
            subject.context,
            subject.title,
            subject.arc_summary,
            build_key_motif(subject.context.story_spark),
        )
        final_prompt = build_image_prompt(subject.style_bible, character_bible, scene_block)

        settings = get_cover_image_settings(mode)
        image_url = await self._render(
            final_prompt,
            settings,
            CostTracking(story_id=story_id, step="cover_image_generate"),
            f"{story_id}/cover.png",
            "Cover image generation returned empty image data.",
        )

        return {
            "image_url": image_url,
            "image_model": settings.model,
            "image_prompt": final_prompt,
            "image_prompt_json": {
                "style_id": subject.style_id,
                "style_bible": subject.style_bible,
                "character_bible": character_bible,
                "scene_block": scene_block,
                "final_prompt": final_prompt,
                "stage": subject.context.stage,
            },
        }
