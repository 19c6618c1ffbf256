from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator

# Trimmed, non-empty text as returned by the planner/extractors
NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class StorySpark(str, Enum):
    ADVENTURE = "adventure"
    MYSTERY = "mystery"
    BRAVE = "brave"
    FRIENDSHIP = "friendship"
    SILLY = "silly"
    DISCOVERY = "discovery"
    HELPER = "helper"
    MAGIC = "magic"


class StoryTone(str, Enum):
    CALM = "calm"
    SILLY = "silly"
    ADVENTUROUS = "adventurous"


class ProfileKind(str, Enum):
    KID = "kid"
    ADULT = "adult"


class ImageMode(str, Enum):
    FAST = "fast"
    BEST = "best"


class ImageStatus(str, Enum):
    PENDING = "pending"
    NOT_STARTED = "not_started"
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"


# Statuses the orchestrator will (re)attempt
PENDING_IMAGE_STATUSES = (ImageStatus.PENDING, ImageStatus.NOT_STARTED, ImageStatus.FAILED)


# Story plan models
class StoryBibleCharacter(BaseModel):
    name: NonEmptyStr
    role: NonEmptyStr
    traits: list[NonEmptyStr] = Field(..., min_length=1)


class StoryBible(BaseModel):
    title: NonEmptyStr
    audience_age: int = Field(..., ge=1, le=17)
    tone: StoryTone
    setting: NonEmptyStr
    rules: list[NonEmptyStr] = Field(..., min_length=1)
    characters: list[StoryBibleCharacter] = Field(..., min_length=1)
    allowed_entities: list[NonEmptyStr] = Field(..., min_length=1)
    forbidden: list[NonEmptyStr] = Field(default_factory=list)
    ending_goal: NonEmptyStr


class BeatPage(BaseModel):
    """One page of the beat sheet (keys keep the planner's camelCase wire names)"""

    model_config = ConfigDict(populate_by_name=True)

    page_number: int = Field(..., ge=1, alias="pageNumber")
    beat_goal: NonEmptyStr = Field(..., alias="beatGoal")
    must_include: list[NonEmptyStr] = Field(default_factory=list, alias="mustInclude")
    must_not_include: list[NonEmptyStr] = Field(default_factory=list, alias="mustNotInclude")
    cliffhanger_or_transition: NonEmptyStr = Field(..., alias="cliffhangerOrTransition")


class BeatSheet(BaseModel):
    page_count: int = Field(..., ge=2, le=40)
    pages: list[BeatPage] = Field(..., min_length=2, max_length=40)

    @model_validator(mode="after")
    def check_page_count(self):
        if len(self.pages) != self.page_count:
            raise ValueError("pages length must equal page_count")
        return self


class ContinuityLedger(BaseModel):
    established_facts: list[NonEmptyStr] = Field(default_factory=list)
    open_threads: list[NonEmptyStr] = Field(default_factory=list)


class StoryPlan(BaseModel):
    story_bible_json: StoryBible
    beat_sheet_json: BeatSheet
    continuity_ledger_json: ContinuityLedger = Field(default_factory=ContinuityLedger)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class PageValidation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool
    issues: list[NonEmptyStr] = Field(default_factory=list)
    fixed_text: Optional[NonEmptyStr] = Field(None, alias="fixedText")


class RewriteOutput(BaseModel):
    critique: Any = None
    revised_story: str = ""


# Planner input
class KidProfile(BaseModel):
    id: Optional[UUID] = None
    display_name: NonEmptyStr
    age: Optional[int] = None
    themes: list[str] = Field(default_factory=list)
    books_we_like: list[str] = Field(default_factory=list)


class AdultProfile(BaseModel):
    id: Optional[UUID] = None
    display_name: NonEmptyStr
    persona_label: Optional[str] = None


class PlannerInput(BaseModel):
    universe_name: str = "Story Universe"
    kids: list[KidProfile] = Field(default_factory=list)
    adults: list[AdultProfile] = Field(default_factory=list)
    audience_age: int = Field(6, ge=1, le=17)
    story_spark: StorySpark = StorySpark.ADVENTURE
    length_minutes: int = Field(10, ge=1, le=60)
    surprise_vs_guided: str = "surprise"
    optional_prompt: str = ""


# Illustration models
class SceneSpec(BaseModel):
    setting: NonEmptyStr
    action: NonEmptyStr
    mood: NonEmptyStr
    time_of_day: NonEmptyStr
    camera_framing: NonEmptyStr


class IdentityBibleSpec(BaseModel):
    hair: NonEmptyStr
    eyes: NonEmptyStr
    skin_tone: NonEmptyStr
    face_features: NonEmptyStr
    body_proportions: NonEmptyStr
    must_keep: list[NonEmptyStr] = Field(..., min_length=1)
    must_not: list[NonEmptyStr] = Field(..., min_length=1)


class OutfitSpec(BaseModel):
    top: NonEmptyStr
    bottom: NonEmptyStr
    shoes: NonEmptyStr
    accessories: list[NonEmptyStr] = Field(default_factory=list)
    palette: list[NonEmptyStr] = Field(..., min_length=1)


class ReferenceImage(BaseModel):
    id: UUID
    kind: str
    image_url: str


class ResolvedIdentity(BaseModel):
    identity_bible_id: UUID
    profile_kind: ProfileKind
    profile_id: UUID
    identity: IdentityBibleSpec
    reference_images: list[ReferenceImage] = Field(default_factory=list)


class ResolvedOutfit(BaseModel):
    id: UUID
    outfit: OutfitSpec
    outfit_lock: bool = False


class StoryContext(BaseModel):
    """What an illustration needs to know about the story around a page"""

    setting: str
    season: str = "all-season"
    tone: StoryTone = StoryTone.CALM
    stage: str = ""
    story_spark: str = ""


class IllustratedCharacter(BaseModel):
    """A story character resolved for illustration: identity plus this story's outfit"""

    name: str
    profile_kind: ProfileKind
    profile_id: UUID
    identity: ResolvedIdentity
    outfit: Optional[ResolvedOutfit] = None  # covers render identities only


# Pipeline results
class StoryPageText(BaseModel):
    page_index: int
    text: str


class DraftPage(BaseModel):
    page_number: int
    text: str


class StoryPipelineResult(BaseModel):
    title: str
    pages: list[DraftPage]
    story_text: str
    word_count: int
    story_bible: StoryBible
    beat_sheet: BeatSheet
    continuity_ledger: ContinuityLedger
    warnings: list[str] = Field(default_factory=list)


# API models
class StoryGenerationRequest(BaseModel):
    universe_id: UUID
    kid_profile_ids: list[UUID] = Field(default_factory=list)
    adult_profile_ids: list[UUID] = Field(default_factory=list)
    audience_age: int = Field(..., ge=1, le=17)
    story_spark: StorySpark
    length_minutes: int = Field(..., ge=1, le=60)
    surprise_vs_guided: str = Field("surprise", pattern="^(surprise|guided)$")
    optional_prompt: str = Field("", max_length=2000)


class StoryCostEntry(BaseModel):
    step: str
    model: str
    page_number: Optional[int] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


class StoryGenerationResponse(BaseModel):
    ok: bool = True
    title: str
    storyText: str
    pages: list[DraftPage]
    storyBible: dict[str, Any]
    beatSheet: dict[str, Any]
    continuityLedger: dict[str, Any]
    wordCount: int
    sceneCount: int
    warnings: list[str] = Field(default_factory=list)
    generationCosts: list[StoryCostEntry] = Field(default_factory=list)


class StorySaveRequest(BaseModel):
    universe_id: UUID
    kid_profile_ids: list[UUID] = Field(default_factory=list)
    adult_profile_ids: list[UUID] = Field(default_factory=list)
    audience_age: int = Field(..., ge=1, le=17)
    story_spark: StorySpark
    length_minutes: int = Field(..., ge=1, le=60)
    optional_prompt: str = Field("", max_length=2000)
    stage: str = Field("", max_length=800)
    title: str = Field(..., min_length=1, max_length=500)
    story_text: str = Field(..., min_length=1)
    pages: list[DraftPage] = Field(default_factory=list)
    story_bible: Optional[StoryBible] = None
    beat_sheet: Optional[BeatSheet] = None
    continuity_ledger: Optional[ContinuityLedger] = None
    image_mode: ImageMode = ImageMode.FAST
    generate_illustrations: bool = False
    generation_costs: list[StoryCostEntry] = Field(default_factory=list)


class StorySaveResponse(BaseModel):
    story_id: UUID
    page_count: int
    style_id: str
    illustrations_started: bool = False


class IllustrationStartResponse(BaseModel):
    started: bool


class StoryPageResponse(BaseModel):
    id: UUID
    page_index: int
    text: str
    image_status: ImageStatus
    image_url: Optional[str] = None
    image_error: Optional[str] = None
    image_model: Optional[str] = None
    image_generated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class StoryPagesResponse(BaseModel):
    story_id: UUID
    pages: list[StoryPageResponse]


class OutfitLockRequest(BaseModel):
    locked: bool = True


class OutfitLockResponse(BaseModel):
    story_id: UUID
    profile_kind: ProfileKind
    profile_id: UUID
    outfit_lock: bool
