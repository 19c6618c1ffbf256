"""Stable, versioned visual identities for story characters"""

import hashlib
import json
import logging
from typing import Any, Optional
from uuid import UUID

from image_generation_service import (
    PORTRAIT_IMAGE_SETTINGS,
    ImageGenerationError,
    OpenAIImageClient,
    decode_image,
    image_client,
)
from models import IdentityBibleSpec, ProfileKind, ReferenceImage, ResolvedIdentity
from pydantic import BaseModel, ValidationError
from story_store import DuplicateVersionError, StoryStore

from shared.generation_cost_logger import CostTracking
from shared.json_utils import parse_jsonb_field
from shared.llm_client import LLMClient, LLMError, llm_client
from shared.pipeline_config import DEFAULT_SETTINGS, PipelineSettings
from shared.storage_service import StorageError, StorageService, storage_service
from shared.structured_output import parse_json_object_flexible

logger = logging.getLogger(__name__)

IDENTITY_SYSTEM_PROMPT = (
    "You extract stable visual identity from a person photo for consistent illustration. "
    "Output JSON only."
)

IDENTITY_SCHEMA_HINT = "\n".join(
    [
        "{",
        '  "hair": "string",',
        '  "eyes": "string",',
        '  "skin_tone": "string",',
        '  "face_features": "string",',
        '  "body_proportions": "string",',
        '  "must_keep": ["string"],',
        '  "must_not": ["string"]',
        "}",
    ]
)

PORTRAIT_STYLE_LINES = [
    "children's picture book illustration, clean shapes, soft shading",
    "Toy Box Adventure palette: #FF9F1C, #2EC4B6, #FFBF69, #CBF3F0, #293241",
    "neutral portrait, soft plain background",
    "focus on stable facial identity",
    "neutral clothing only",
    "no text, no watermark, no logo, no caption",
]

_EXPLICIT_TEXT_FIELDS = ("hair", "eyes", "skin_tone", "face_features", "body_proportions")


class ProfileNotFoundError(LookupError):
    pass


class IdentityBibleCreationError(Exception):
    pass


class ProfileSnapshot(BaseModel):
    profile_kind: ProfileKind
    profile_id: UUID
    universe_id: Optional[UUID] = None
    display_name: str
    profile_photo_url: Optional[str] = None
    profile_attributes: dict[str, Any] = {}
    descriptor: str = ""


def _sort_object(value: Any) -> Any:
    if isinstance(value, list):
        return [_sort_object(v) for v in value]
    if isinstance(value, dict):
        return {k: _sort_object(value[k]) for k in sorted(value)}
    return value


def compute_profile_source_hash(
    profile_photo_url: Optional[str], profile_attributes: Optional[dict[str, Any]]
) -> str:
    """sha256 of 'photo|attributes-json' with keys sorted recursively"""
    photo = profile_photo_url or ""
    attrs = json.dumps(
        _sort_object(profile_attributes or {}), separators=(",", ":"), ensure_ascii=False
    )
    return hashlib.sha256(f"{photo}|{attrs}".encode("utf-8")).hexdigest()


def build_profile_snapshot(profile_kind: ProfileKind, row: dict[str, Any]) -> ProfileSnapshot:
    kind = ProfileKind(profile_kind)
    if kind == ProfileKind.KID:
        themes = row.get("themes") or []
        descriptor = "; ".join(
            part
            for part in [
                f"age {row['age']}" if row.get("age") is not None else "",
                f"themes: {', '.join(themes)}" if themes else "",
            ]
            if part
        )
    else:
        descriptor = row.get("persona_label") or "supportive adult"

    return ProfileSnapshot(
        profile_kind=kind,
        profile_id=row["id"],
        universe_id=row.get("universe_id"),
        display_name=row.get("display_name") or kind.value.title(),
        profile_photo_url=row.get("profile_photo_url"),
        profile_attributes=parse_jsonb_field(
            row.get("profile_attributes_json"), field_name="profile_attributes_json"
        ),
        descriptor=descriptor,
    )


def fallback_identity(profile: ProfileSnapshot) -> IdentityBibleSpec:
    return IdentityBibleSpec(
        hair="natural hair, keep style consistent",
        eyes="warm expressive eyes",
        skin_tone="natural skin tone, keep consistent",
        face_features=profile.descriptor or "friendly face",
        body_proportions="age-appropriate picture-book proportions",
        must_keep=[
            "hair color/style must remain consistent",
            "skin tone must remain consistent",
            "eye color must remain consistent",
            "face shape must remain consistent",
            "age/body proportions must remain consistent",
        ],
        must_not=["do not change identity-defining features", "no dramatic age shift"],
    )


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str) and v.strip()]


def merge_explicit_identity(base: IdentityBibleSpec, explicit: dict[str, Any]) -> IdentityBibleSpec:
    """Explicit non-empty attributes win per field; must_keep/must_not are unioned"""
    merged = base.model_dump()
    for field in _EXPLICIT_TEXT_FIELDS:
        value = explicit.get(field)
        if isinstance(value, str) and value.strip():
            merged[field] = value
    merged["must_keep"] = list(dict.fromkeys([*base.must_keep, *_string_list(explicit.get("must_keep"))]))
    merged["must_not"] = list(dict.fromkeys([*base.must_not, *_string_list(explicit.get("must_not"))]))
    return IdentityBibleSpec.model_validate(merged)


def build_portrait_prompt(identity: IdentityBibleSpec) -> str:
    return ". ".join(
        [
            *PORTRAIT_STYLE_LINES,
            f"hair: {identity.hair}",
            f"eyes: {identity.eyes}",
            f"skin tone: {identity.skin_tone}",
            f"face features: {identity.face_features}",
            f"body proportions: {identity.body_proportions}",
        ]
    )


async def extract_identity_from_photo(
    photo_url: str,
    display_name: str,
    tracking: Optional[CostTracking] = None,
    llm: Optional[LLMClient] = None,
    model: str = DEFAULT_SETTINGS.text_model,
) -> IdentityBibleSpec:
    """
    Vision call that reads a stable identity from a profile photo.

    Raises:
        LLMError: Provider failure
        ValueError: Output missing or not a valid identity
    """
    client = llm or llm_client
    raw = await client.generate(
        system=IDENTITY_SYSTEM_PROMPT,
        messages=[
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": f"Extract identity bible for {display_name}."},
                    {"type": "text", "text": f"Schema:\n{IDENTITY_SCHEMA_HINT}"},
                    {"type": "image_url", "image_url": {"url": photo_url}},
                ],
            }
        ],
        model=model,
        temperature=0.2,
        presence_penalty=0,
        frequency_penalty=0,
        tracking=tracking,
    )
    try:
        return IdentityBibleSpec.model_validate(parse_json_object_flexible(raw))
    except ValidationError as e:
        raise ValueError(f"Identity extraction returned invalid JSON: {e}") from e


class IdentityResolver:
    """
    Resolves (profile_kind, profile_id) to an active identity bible.

    Identities are keyed by a hash of the profile photo and explicit attributes,
    so an unchanged profile always resolves to the same row and any edit creates
    a new version.
    """

    def __init__(
        self,
        store: StoryStore,
        llm: Optional[LLMClient] = None,
        images: Optional[OpenAIImageClient] = None,
        blob_store: Optional[StorageService] = None,
        settings: PipelineSettings = DEFAULT_SETTINGS,
    ):
        self.store = store
        self.llm = llm or llm_client
        self.images = images or image_client
        self.blob_store = blob_store or storage_service
        self.settings = settings

    async def load_profile(self, profile_kind: ProfileKind, profile_id) -> ProfileSnapshot:
        kind = ProfileKind(profile_kind)
        row = await self.store.get_profile(kind.value, profile_id)
        if not row:
            raise ProfileNotFoundError(f"{kind.value.title()} profile not found.")
        return build_profile_snapshot(kind, row)

    async def _build_identity(
        self, profile: ProfileSnapshot, tracking: CostTracking
    ) -> IdentityBibleSpec:
        extracted = fallback_identity(profile)
        if profile.profile_photo_url:
            try:
                extracted = await extract_identity_from_photo(
                    profile.profile_photo_url,
                    profile.display_name,
                    tracking=tracking.for_step("identity_extract"),
                    llm=self.llm,
                    model=self.settings.text_model,
                )
            except (LLMError, ValueError) as e:
                logger.warning(
                    f"⚠️ IDENTITY: Photo extraction failed for {profile.display_name}, using fallback: {e}"
                )
        return merge_explicit_identity(extracted, profile.profile_attributes)

    async def _insert_new_version(
        self, profile: ProfileSnapshot, source_hash: str, identity: IdentityBibleSpec
    ) -> dict[str, Any]:
        """Optimistic version insert; a lost race rereads the winning row"""
        kind = profile.profile_kind.value
        for attempt in range(self.settings.identity_insert_attempts):
            next_version = await self.store.max_identity_version(kind, profile.profile_id) + 1
            try:
                return await self.store.insert_identity_bible(
                    profile.universe_id,
                    kind,
                    profile.profile_id,
                    next_version,
                    source_hash,
                    identity.model_dump(),
                )
            except DuplicateVersionError:
                logger.info(
                    f"🔁 IDENTITY: Version {next_version} for {kind} {profile.profile_id} "
                    f"taken (attempt {attempt + 1}), rereading"
                )

            winner = await self.store.find_active_identity(kind, profile.profile_id, source_hash)
            if winner:
                return winner

        raise IdentityBibleCreationError("Failed to create character identity bible after retry.")

    async def _ensure_portrait(
        self,
        identity_bible_id,
        profile: ProfileSnapshot,
        identity: IdentityBibleSpec,
        tracking: CostTracking,
    ) -> None:
        existing = await self.store.list_reference_images(identity_bible_id, "portrait")
        if existing:
            return

        settings = PORTRAIT_IMAGE_SETTINGS
        b64 = await self.images.generate(
            build_portrait_prompt(identity),
            settings,
            tracking.for_step("identity_reference_image"),
        )
        if not b64:
            raise ImageGenerationError("Identity portrait returned empty image data.")

        path = (
            f"identity-refs/{profile.universe_id}/"
            f"{profile.profile_kind.value}_{profile.profile_id}_v{identity_bible_id}.png"
        )
        image_url = await self.blob_store.upload(path, decode_image(b64), "image/png")
        await self.store.insert_reference_image(
            identity_bible_id, "portrait", image_url, settings.model, {"size": settings.size}
        )
        print(f"🖼️ IDENTITY: Created portrait for {profile.display_name}", flush=True)

    async def get_or_create_identity_bible(
        self,
        profile_kind: ProfileKind,
        profile_id,
        story_id: Optional[str] = None,
        page_number: Optional[int] = None,
    ) -> ResolvedIdentity:
        """
        Resolve the active identity for a profile, creating a new version if needed.

        Args:
            profile_kind: kid or adult
            profile_id: Profile UUID
            story_id: Story the lookup is made for (cost attribution)
            page_number: Page the lookup is made for (cost attribution)

        Returns:
            ResolvedIdentity with its portrait reference images

        Raises:
            ProfileNotFoundError: Unknown profile
            IdentityBibleCreationError: Version insert lost every race
        """
        profile = await self.load_profile(profile_kind, profile_id)
        kind = profile.profile_kind.value
        source_hash = compute_profile_source_hash(
            profile.profile_photo_url, profile.profile_attributes
        )
        tracking = CostTracking(
            story_id=str(story_id) if story_id else None,
            page_number=page_number,
            step="identity_extract",
        )

        row = await self.store.find_active_identity(kind, profile.profile_id, source_hash)
        if not row:
            identity = await self._build_identity(profile, tracking)
            row = await self._insert_new_version(profile, source_hash, identity)
            logger.info(f"🪪 IDENTITY: Created v{row['version']} for {kind} {profile.profile_id}")

        identity = IdentityBibleSpec.model_validate(
            parse_jsonb_field(row["identity_bible_json"], field_name="identity_bible_json")
        )

        try:
            await self._ensure_portrait(row["id"], profile, identity, tracking)
        except (ImageGenerationError, StorageError) as e:
            logger.warning(f"⚠️ IDENTITY: Portrait unavailable for {profile.display_name}: {e}")

        references = await self.store.list_reference_images(row["id"], "portrait")
        return ResolvedIdentity(
            identity_bible_id=row["id"],
            profile_kind=profile.profile_kind,
            profile_id=profile.profile_id,
            identity=identity,
            reference_images=[ReferenceImage.model_validate(ref) for ref in references],
        )
