import json
import uuid

import pytest
from conftest import FakeBlobStore, FakeImageClient, FakeLLM, InMemoryStoryStore
from identity_service import (
    IdentityBibleCreationError,
    IdentityResolver,
    ProfileNotFoundError,
    build_portrait_prompt,
    build_profile_snapshot,
    compute_profile_source_hash,
    fallback_identity,
    merge_explicit_identity,
)
from image_generation_service import PORTRAIT_IMAGE_SETTINGS
from models import ProfileKind
from story_store import DuplicateVersionError

from shared.storage_service import StorageError

PHOTO_IDENTITY = {
    "hair": "short black curls",
    "eyes": "dark brown",
    "skin_tone": "deep brown",
    "face_features": "dimples, round cheeks",
    "body_proportions": "small child",
    "must_keep": ["dimples"],
    "must_not": ["straight hair"],
}


def _resolver(store, llm=None, images=None, blob_store=None) -> IdentityResolver:
    return IdentityResolver(
        store,
        llm=llm or FakeLLM(configured=False),
        images=images or FakeImageClient(),
        blob_store=blob_store or FakeBlobStore(),
    )


# Source hash
def test_source_hash_ignores_key_order():
    a = compute_profile_source_hash("https://p/1.jpg", {"b": 1, "a": {"y": [2, {"d": 1, "c": 0}], "x": 1}})
    b = compute_profile_source_hash("https://p/1.jpg", {"a": {"x": 1, "y": [2, {"c": 0, "d": 1}]}, "b": 1})
    assert a == b
    assert len(a) == 64


def test_source_hash_changes_with_photo_or_attributes():
    base = compute_profile_source_hash("https://p/1.jpg", {"hair": "red"})
    assert compute_profile_source_hash("https://p/2.jpg", {"hair": "red"}) != base
    assert compute_profile_source_hash("https://p/1.jpg", {"hair": "blonde"}) != base
    assert compute_profile_source_hash(None, None) == compute_profile_source_hash("", {})


# Snapshots and merging
def test_kid_snapshot_descriptor():
    row = {"id": uuid.uuid4(), "display_name": "Mia", "age": 6, "themes": ["space", "dinosaurs"]}
    snapshot = build_profile_snapshot(ProfileKind.KID, row)

    assert snapshot.descriptor == "age 6; themes: space, dinosaurs"
    assert snapshot.profile_attributes == {}


def test_adult_snapshot_defaults():
    row = {"id": uuid.uuid4(), "display_name": None, "profile_attributes_json": '{"hair": "gray"}'}
    snapshot = build_profile_snapshot(ProfileKind.ADULT, row)

    assert snapshot.display_name == "Adult"
    assert snapshot.descriptor == "supportive adult"
    assert snapshot.profile_attributes == {"hair": "gray"}


def test_merge_explicit_identity_fields_win_and_lists_union():
    snapshot = build_profile_snapshot(ProfileKind.KID, {"id": uuid.uuid4(), "display_name": "Mia"})
    base = fallback_identity(snapshot)

    merged = merge_explicit_identity(
        base,
        {
            "hair": "long red braids",
            "eyes": "   ",
            "must_keep": ["red braids", "skin tone must remain consistent", 7],
            "must_not": "not a list",
        },
    )

    assert merged.hair == "long red braids"
    assert merged.eyes == base.eyes
    assert merged.face_features == "friendly face"
    assert merged.must_keep == [*base.must_keep, "red braids"]
    assert merged.must_not == base.must_not


def test_portrait_prompt_describes_identity():
    snapshot = build_profile_snapshot(ProfileKind.KID, {"id": uuid.uuid4(), "display_name": "Mia"})
    prompt = build_portrait_prompt(fallback_identity(snapshot))

    assert prompt.startswith("children's picture book illustration")
    assert "neutral clothing only" in prompt
    assert "hair: natural hair, keep style consistent" in prompt


# Resolution
@pytest.mark.asyncio
async def test_creates_first_version_with_portrait(store: InMemoryStoryStore):
    universe = store.add_universe()
    profile = store.add_profile("kid", universe_id=universe["id"], display_name="Mia", age=6)
    images = FakeImageClient()
    blob_store = FakeBlobStore()
    resolver = _resolver(store, images=images, blob_store=blob_store)

    resolved = await resolver.get_or_create_identity_bible(ProfileKind.KID, profile["id"], story_id="s-1", page_number=2)

    assert store.identities[0]["version"] == 1
    assert resolved.identity_bible_id == store.identities[0]["id"]
    assert resolved.identity.face_features == "age 6"
    assert len(resolved.reference_images) == 1

    expected_path = f"identity-refs/{universe['id']}/kid_{profile['id']}_v{resolved.identity_bible_id}.png"
    assert list(blob_store.objects) == [expected_path]
    assert resolved.reference_images[0].image_url == f"https://images.test/{expected_path}"

    call = images.calls[0]
    assert call["settings"] == PORTRAIT_IMAGE_SETTINGS
    assert call["tracking"].step == "identity_reference_image"
    assert call["tracking"].story_id == "s-1"
    assert call["tracking"].page_number == 2
    assert store.reference_images[0]["params_json"] == {"size": "1024x1536"}


@pytest.mark.asyncio
async def test_unchanged_profile_reuses_identity_and_portrait(store: InMemoryStoryStore):
    profile = store.add_profile("adult", display_name="Dad")
    images = FakeImageClient()
    resolver = _resolver(store, images=images)

    first = await resolver.get_or_create_identity_bible("adult", profile["id"])
    second = await resolver.get_or_create_identity_bible("adult", profile["id"])

    assert first.identity_bible_id == second.identity_bible_id
    assert len(store.identities) == 1
    assert len(images.calls) == 1


@pytest.mark.asyncio
async def test_edited_profile_gets_next_version(store: InMemoryStoryStore):
    profile = store.add_profile("kid", profile_attributes_json={"hair": "brown bob"})
    resolver = _resolver(store)

    first = await resolver.get_or_create_identity_bible("kid", profile["id"])
    profile["profile_attributes_json"] = {"hair": "short pixie cut"}
    second = await resolver.get_or_create_identity_bible("kid", profile["id"])

    assert first.identity_bible_id != second.identity_bible_id
    assert [row["version"] for row in store.identities] == [1, 2]
    assert second.identity.hair == "short pixie cut"


@pytest.mark.asyncio
async def test_photo_identity_is_extracted_and_explicit_attributes_win(store: InMemoryStoryStore):
    profile = store.add_profile(
        "kid",
        display_name="Ari",
        profile_photo_url="https://photos.test/ari.jpg",
        profile_attributes_json={"eyes": "hazel", "must_keep": ["gap tooth"]},
    )
    llm = FakeLLM([f"```json\n{json.dumps(PHOTO_IDENTITY)}\n```"])
    resolver = _resolver(store, llm=llm)

    resolved = await resolver.get_or_create_identity_bible("kid", profile["id"])

    assert resolved.identity.hair == "short black curls"
    assert resolved.identity.eyes == "hazel"
    assert resolved.identity.must_keep == ["dimples", "gap tooth"]

    parts = llm.calls[0]["messages"][0]["content"]
    assert parts[0] == {"type": "text", "text": "Extract identity bible for Ari."}
    assert parts[2] == {"type": "image_url", "image_url": {"url": "https://photos.test/ari.jpg"}}
    assert llm.calls[0]["temperature"] == 0.2
    assert llm.calls[0]["tracking"].step == "identity_extract"


@pytest.mark.asyncio
@pytest.mark.parametrize("response", ['{"hair": "only hair"}', "not json at all"])
async def test_bad_photo_extraction_falls_back(store: InMemoryStoryStore, response):
    profile = store.add_profile("kid", age=5, profile_photo_url="https://photos.test/kid.jpg")
    resolver = _resolver(store, llm=FakeLLM([response]))

    resolved = await resolver.get_or_create_identity_bible("kid", profile["id"])

    assert resolved.identity.hair == "natural hair, keep style consistent"
    assert resolved.identity.face_features == "age 5"


@pytest.mark.asyncio
async def test_portrait_failure_still_resolves_identity(store: InMemoryStoryStore):
    profile = store.add_profile("kid")
    resolver = _resolver(store, images=FakeImageClient([""]))

    resolved = await resolver.get_or_create_identity_bible("kid", profile["id"])

    assert resolved.reference_images == []
    assert len(store.identities) == 1


@pytest.mark.asyncio
async def test_storage_failure_still_resolves_identity(store: InMemoryStoryStore):
    class BrokenBlobStore(FakeBlobStore):
        async def upload(self, path, data, content_type="image/png"):
            raise StorageError("Missing R2 configuration. Check environment variables.")

    profile = store.add_profile("kid")
    resolved = await _resolver(store, blob_store=BrokenBlobStore()).get_or_create_identity_bible(
        "kid", profile["id"]
    )
    assert resolved.reference_images == []


@pytest.mark.asyncio
async def test_unknown_profile_raises(store: InMemoryStoryStore):
    with pytest.raises(ProfileNotFoundError, match="Kid profile not found."):
        await _resolver(store).get_or_create_identity_bible("kid", uuid.uuid4())


class RacingStore(InMemoryStoryStore):
    """Lets a competing writer claim the version between our read and insert"""

    def __init__(self, competitor_hash=None, always_lose: bool = False):
        super().__init__()
        self.competitor_hash = competitor_hash
        self.always_lose = always_lose
        self.insert_attempts = 0

    async def insert_identity_bible(self, universe_id, profile_kind, profile_id, version, source_hash, identity):
        self.insert_attempts += 1
        if self.always_lose:
            raise DuplicateVersionError("duplicate key value violates unique constraint")
        if self.insert_attempts == 1:
            await super().insert_identity_bible(
                universe_id, profile_kind, profile_id, version, self.competitor_hash or source_hash, identity
            )
        return await super().insert_identity_bible(
            universe_id, profile_kind, profile_id, version, source_hash, identity
        )


@pytest.mark.asyncio
async def test_lost_race_with_same_profile_returns_winner():
    store = RacingStore()
    profile = store.add_profile("kid")

    resolved = await _resolver(store).get_or_create_identity_bible("kid", profile["id"])

    assert len(store.identities) == 1
    assert resolved.identity_bible_id == store.identities[0]["id"]


@pytest.mark.asyncio
async def test_lost_race_with_other_edit_takes_next_version():
    store = RacingStore(competitor_hash="someone-elses-edit")
    profile = store.add_profile("kid")

    resolved = await _resolver(store).get_or_create_identity_bible("kid", profile["id"])

    assert [row["version"] for row in store.identities] == [1, 2]
    assert resolved.identity_bible_id == store.identities[1]["id"]
    assert store.insert_attempts == 2


@pytest.mark.asyncio
async def test_always_losing_the_race_gives_up():
    store = RacingStore(always_lose=True)
    profile = store.add_profile("kid")

    with pytest.raises(IdentityBibleCreationError):
        await _resolver(store).get_or_create_identity_bible("kid", profile["id"])
    assert store.insert_attempts == 3
