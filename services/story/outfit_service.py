"""Per-story character outfits (identity stays in identity_service)"""

import logging
from typing import Any, Optional

from models import OutfitSpec, ProfileKind, ResolvedOutfit, StoryContext
from pydantic import ValidationError
from story_store import StoryStore

from shared.generation_cost_logger import CostTracking
from shared.json_utils import parse_jsonb_field
from shared.llm_client import LLMClient, LLMError, llm_client
from shared.pipeline_config import DEFAULT_SETTINGS, PipelineSettings
from shared.structured_output import parse_json_object_flexible

logger = logging.getLogger(__name__)

OUTFIT_SYSTEM_PROMPT = (
    "You design child-safe story outfits in strict JSON. Keep identity separate from clothing."
)

OUTFIT_SCHEMA_HINT = "\n".join(
    [
        "{",
        '  "top": "string",',
        '  "bottom": "string",',
        '  "shoes": "string",',
        '  "accessories": ["string"],',
        '  "palette": ["string"]',
        "}",
    ]
)

FALLBACK_OUTFIT = OutfitSpec(
    top="cozy top",
    bottom="comfortable bottoms",
    shoes="soft shoes",
    accessories=["small story-themed accessory"],
    palette=["#FF9F1C", "#2EC4B6", "#FFBF69"],
)


class InvalidLockedOutfitError(ValueError):
    pass


def _resolved(row: dict[str, Any]) -> ResolvedOutfit:
    return ResolvedOutfit(
        id=row["id"],
        outfit=OutfitSpec.model_validate(
            parse_jsonb_field(row["outfit_json"], field_name="outfit_json")
        ),
        outfit_lock=bool(row.get("outfit_lock")),
    )


class OutfitResolver:
    """Outfits are scoped to one story; a locked outfit is never regenerated"""

    def __init__(
        self,
        store: StoryStore,
        llm: Optional[LLMClient] = None,
        settings: PipelineSettings = DEFAULT_SETTINGS,
    ):
        self.store = store
        self.llm = llm or llm_client
        self.settings = settings

    async def generate_outfit(
        self, story_context: StoryContext, tracking: Optional[CostTracking] = None
    ) -> OutfitSpec:
        """Ask the model for an outfit; any failure returns FALLBACK_OUTFIT"""
        if not self.llm.is_configured():
            return FALLBACK_OUTFIT

        try:
            raw = await self.llm.generate(
                system=OUTFIT_SYSTEM_PROMPT,
                messages=[
                    {
                        "role": "user",
                        "content": "\n".join(
                            [
                                f"Setting: {story_context.setting}",
                                f"Season: {story_context.season}",
                                f"Tone: {story_context.tone.value}",
                                "Output outfit JSON only:",
                                OUTFIT_SCHEMA_HINT,
                            ]
                        ),
                    }
                ],
                model=self.settings.text_model,
                temperature=0.4,
                presence_penalty=0,
                frequency_penalty=0,
                tracking=tracking,
            )
            return OutfitSpec.model_validate(parse_json_object_flexible(raw))
        except (LLMError, ValueError, ValidationError) as e:
            logger.warning(f"⚠️ OUTFIT: Generation failed, using fallback outfit: {e}")
            return FALLBACK_OUTFIT

    async def get_or_create_story_outfit(
        self,
        story_id,
        profile_kind: ProfileKind,
        profile_id,
        story_context: StoryContext,
        page_number: Optional[int] = None,
    ) -> ResolvedOutfit:
        """
        Resolve a character's outfit for a story.

        A locked row is returned as stored. Otherwise a fresh outfit is
        generated and written over the unlocked row (or inserted).

        Raises:
            InvalidLockedOutfitError: Stored locked outfit no longer validates
        """
        kind = ProfileKind(profile_kind).value
        existing = await self.store.get_story_outfit(story_id, kind, profile_id)

        if existing and existing.get("outfit_lock"):
            try:
                return _resolved(existing)
            except ValidationError as e:
                raise InvalidLockedOutfitError(f"Invalid locked outfit: {e}") from e

        tracking = CostTracking(
            story_id=str(story_id), page_number=page_number, step="outfit_generate"
        )
        outfit = await self.generate_outfit(story_context, tracking)

        if existing:
            row = await self.store.update_story_outfit(existing["id"], outfit.model_dump())
        else:
            row = await self.store.insert_story_outfit(story_id, kind, profile_id, outfit.model_dump())

        if row is None:
            # Locked between our read and write; the locked row wins
            row = await self.store.get_story_outfit(story_id, kind, profile_id)
            logger.info(f"🔒 OUTFIT: {kind} {profile_id} was locked concurrently, keeping stored outfit")

        return _resolved(row)

    async def set_outfit_lock(
        self, story_id, profile_kind: ProfileKind, profile_id, locked: bool
    ) -> Optional[ResolvedOutfit]:
        """Returns None when the story has no outfit for this character yet"""
        row = await self.store.set_outfit_lock(
            story_id, ProfileKind(profile_kind).value, profile_id, locked
        )
        if not row:
            return None
        logger.info(
            f"🔒 OUTFIT: {'Locked' if locked else 'Unlocked'} outfit for {ProfileKind(profile_kind).value} {profile_id}"
        )
        return _resolved(row)
