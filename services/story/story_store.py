"""Relational access for the story pipeline (stories, pages, identities, outfits)"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import asyncpg
from models import ContinuityLedger, StoryPlan
from pydantic import ValidationError

from shared.database import Database
from shared.json_utils import parse_jsonb_field, safe_json_dumps
from shared.structured_output import format_validation_issues

logger = logging.getLogger(__name__)

UNFINISHED_IMAGE_STATUSES = ["pending", "not_started", "generating"]
PENDING_IMAGE_STATUSES = ["pending", "not_started", "failed"]


class StoryNotFoundError(LookupError):
    pass


class StoryPageNotFoundError(LookupError):
    pass


class DuplicateVersionError(Exception):
    """An identity bible with this (profile, version) already exists"""


def _uuid(value) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StoryStore:
    """
    All SQL the pipeline runs, behind one object so tests can swap in an
    in-memory store with the same method names.
    """

    def __init__(self, db: Database):
        self.db = db

    # Universes and profiles
    async def get_universe(self, universe_id) -> Optional[dict[str, Any]]:
        return await self.db.fetch_one(
            "SELECT id, name FROM universes WHERE id = $1", _uuid(universe_id)
        )

    async def get_profiles(self, profile_kind: str, profile_ids: list) -> list[dict[str, Any]]:
        if not profile_ids:
            return []
        return await self.db.fetch_all(
            """
            SELECT * FROM character_profiles
            WHERE profile_kind = $1 AND id = ANY($2::uuid[])
            ORDER BY created_at ASC
            """,
            profile_kind,
            [_uuid(pid) for pid in profile_ids],
        )

    async def get_profile(self, profile_kind: str, profile_id) -> Optional[dict[str, Any]]:
        return await self.db.fetch_one(
            "SELECT * FROM character_profiles WHERE profile_kind = $1 AND id = $2",
            profile_kind,
            _uuid(profile_id),
        )

    # Stories
    async def get_story(self, story_id) -> dict[str, Any]:
        story = await self.db.fetch_one("SELECT * FROM stories WHERE id = $1", _uuid(story_id))
        if not story:
            raise StoryNotFoundError("Story not found.")
        return story

    async def create_story(self, story: dict[str, Any]) -> UUID:
        story_id = uuid4()
        await self.db.execute(
            """
            INSERT INTO stories (
                id, universe_id, title, content, length_minutes, audience_age, tone,
                story_spark, stage, arc_summary, prompt, style_bible, style_id,
                image_mode, status, word_count
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12, $13, $14, $15, $16)
            """,
            story_id,
            _uuid(story["universe_id"]),
            story["title"],
            story.get("content", ""),
            story.get("length_minutes", 10),
            story.get("audience_age"),
            story.get("tone", "calm"),
            story.get("story_spark"),
            story.get("stage"),
            story.get("arc_summary"),
            safe_json_dumps(story.get("prompt") or {}),
            story.get("style_bible"),
            story.get("style_id"),
            story.get("image_mode", "fast"),
            story.get("status", "saved"),
            story.get("word_count"),
        )
        return story_id

    async def update_story_style(self, story_id, style_bible: str, style_id: str) -> None:
        await self.db.execute(
            """
            UPDATE stories SET style_bible = $2, style_id = $3, updated_at = CURRENT_TIMESTAMP
            WHERE id = $1
            """,
            _uuid(story_id),
            style_bible,
            style_id,
        )

    async def update_story_cover(
        self, story_id, cover_image_url: str, cover_prompt: str, image_model: str
    ) -> None:
        await self.db.execute(
            """
            UPDATE stories
            SET cover_image_url = $2, cover_prompt = $3, image_model = $4,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = $1
            """,
            _uuid(story_id),
            cover_image_url,
            cover_prompt,
            image_model,
        )

    async def sync_cover_from_first_page(self, story_id, image_url: str) -> None:
        await self.db.execute(
            """
            UPDATE stories
            SET cover_image_url = COALESCE(cover_image_url, $2),
                first_page_image_url = $2,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = $1
            """,
            _uuid(story_id),
            image_url,
        )

    # Plans
    async def save_story_plan(self, story_id, plan: StoryPlan) -> None:
        payload = plan.to_json()
        await self.db.execute(
            """
            INSERT INTO story_bibles (story_id, story_bible_json, beat_sheet_json, continuity_ledger_json)
            VALUES ($1, $2::jsonb, $3::jsonb, $4::jsonb)
            ON CONFLICT (story_id) DO UPDATE SET
                story_bible_json = EXCLUDED.story_bible_json,
                beat_sheet_json = EXCLUDED.beat_sheet_json,
                continuity_ledger_json = EXCLUDED.continuity_ledger_json,
                updated_at = CURRENT_TIMESTAMP
            """,
            _uuid(story_id),
            safe_json_dumps(payload["story_bible_json"]),
            safe_json_dumps(payload["beat_sheet_json"]),
            safe_json_dumps(payload["continuity_ledger_json"]),
        )

    async def get_story_plan(self, story_id) -> StoryPlan:
        """
        Raises:
            StoryNotFoundError: No plan stored for the story
            ValueError: Stored plan fails validation (issues joined with ' | ')
        """
        row = await self.db.fetch_one(
            """
            SELECT story_bible_json, beat_sheet_json, continuity_ledger_json
            FROM story_bibles WHERE story_id = $1
            """,
            _uuid(story_id),
        )
        if not row:
            raise StoryNotFoundError("Story plan not found.")
        try:
            return StoryPlan.model_validate(
                {
                    "story_bible_json": parse_jsonb_field(row["story_bible_json"]),
                    "beat_sheet_json": parse_jsonb_field(row["beat_sheet_json"]),
                    "continuity_ledger_json": parse_jsonb_field(row["continuity_ledger_json"]),
                }
            )
        except ValidationError as e:
            raise ValueError(format_validation_issues(e)) from e

    async def update_continuity_ledger(self, story_id, ledger: ContinuityLedger) -> None:
        await self.db.execute(
            """
            UPDATE story_bibles
            SET continuity_ledger_json = $2::jsonb, updated_at = CURRENT_TIMESTAMP
            WHERE story_id = $1
            """,
            _uuid(story_id),
            safe_json_dumps(ledger.model_dump()),
        )

    # Story characters
    async def add_story_characters(self, story_id, characters: list[tuple[str, Any]]) -> None:
        if not characters:
            return
        await self.db.execute_many(
            """
            INSERT INTO story_characters (id, story_id, character_type, character_id)
            VALUES ($1, $2, $3, $4)
            """,
            [(uuid4(), _uuid(story_id), kind, _uuid(cid)) for kind, cid in characters],
        )

    async def list_story_characters(self, story_id) -> list[dict[str, Any]]:
        return await self.db.fetch_all(
            """
            SELECT sc.id, sc.character_type, sc.character_id,
                   COALESCE(sc.custom_name, cp.display_name) AS display_name,
                   sc.identity_bible_id, sc.outfit_id
            FROM story_characters sc
            LEFT JOIN character_profiles cp ON cp.id = sc.character_id
            WHERE sc.story_id = $1
            ORDER BY sc.created_at ASC
            """,
            _uuid(story_id),
        )

    async def update_story_character_refs(
        self, story_id, character_type: str, character_id, identity_bible_id, outfit_id
    ) -> None:
        await self.db.execute(
            """
            UPDATE story_characters SET identity_bible_id = $4, outfit_id = $5
            WHERE story_id = $1 AND character_type = $2 AND character_id = $3
            """,
            _uuid(story_id),
            character_type,
            _uuid(character_id),
            _uuid(identity_bible_id),
            _uuid(outfit_id),
        )

    # Pages
    async def list_story_pages(self, story_id) -> list[dict[str, Any]]:
        return await self.db.fetch_all(
            "SELECT * FROM story_pages WHERE story_id = $1 ORDER BY page_index ASC",
            _uuid(story_id),
        )

    async def get_story_page(self, story_id, page_index: int) -> dict[str, Any]:
        page = await self.db.fetch_one(
            "SELECT * FROM story_pages WHERE story_id = $1 AND page_index = $2",
            _uuid(story_id),
            page_index,
        )
        if not page:
            raise StoryPageNotFoundError("Story page not found.")
        return page

    async def insert_story_pages_ignore_duplicates(
        self, story_id, pages: list[tuple[int, str]]
    ) -> None:
        """Create pending pages; rows that already exist for an index are left alone"""
        if not pages:
            return
        await self.db.execute_many(
            """
            INSERT INTO story_pages (id, story_id, page_index, text, image_status)
            VALUES ($1, $2, $3, $4, 'pending')
            ON CONFLICT (story_id, page_index) DO NOTHING
            """,
            [(uuid4(), _uuid(story_id), index, text) for index, text in pages],
        )

    async def replace_story_pages(self, story_id, pages: list[tuple[int, str]]) -> None:
        async with self.db.transaction() as conn:
            await conn.execute("DELETE FROM story_pages WHERE story_id = $1", _uuid(story_id))
            if pages:
                await conn.executemany(
                    """
                    INSERT INTO story_pages (id, story_id, page_index, text, image_status)
                    VALUES ($1, $2, $3, $4, 'pending')
                    """,
                    [(uuid4(), _uuid(story_id), index, text) for index, text in pages],
                )

    async def set_page_generating(self, page_id) -> None:
        await self.db.execute(
            """
            UPDATE story_pages
            SET image_status = 'generating', image_error = NULL, updated_at = CURRENT_TIMESTAMP
            WHERE id = $1
            """,
            _uuid(page_id),
        )

    async def update_page_scene(self, page_id, scene: dict[str, Any]) -> None:
        await self.db.execute(
            "UPDATE story_pages SET scene_json = $2::jsonb WHERE id = $1",
            _uuid(page_id),
            safe_json_dumps(scene),
        )

    async def mark_page_ready(self, page_id, result: dict[str, Any]) -> None:
        await self.db.execute(
            """
            UPDATE story_pages SET
                image_status = 'ready',
                image_path = $2,
                image_url = $3,
                image_prompt = $4,
                scene_json = $5::jsonb,
                image_prompt_json = $6::jsonb,
                prompt_json = $7::jsonb,
                image_model = $8,
                image_quality = $9,
                image_size = $10,
                image_generated_at = $11,
                used_reference_image_ids = $12::uuid[],
                image_error = NULL,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = $1
            """,
            _uuid(page_id),
            result["image_path"],
            result["image_url"],
            result["image_prompt"],
            safe_json_dumps(result["scene_json"]),
            safe_json_dumps(result["image_prompt_json"]),
            safe_json_dumps(result["prompt_json"]),
            result["image_model"],
            result["image_quality"],
            result["image_size"],
            _now(),
            [_uuid(rid) for rid in result.get("used_reference_image_ids", [])],
        )

    async def mark_page_failed(self, page_id, error: str) -> None:
        await self.db.execute(
            """
            UPDATE story_pages
            SET image_status = 'failed', image_error = $2, updated_at = CURRENT_TIMESTAMP
            WHERE id = $1
            """,
            _uuid(page_id),
            error,
        )

    async def fail_unfinished_pages(self, story_id, error: str) -> None:
        await self.db.execute(
            """
            UPDATE story_pages
            SET image_status = 'failed', image_error = $2, updated_at = CURRENT_TIMESTAMP
            WHERE story_id = $1 AND image_status = ANY($3::text[])
            """,
            _uuid(story_id),
            error,
            UNFINISHED_IMAGE_STATUSES,
        )

    # Identity bibles
    async def find_active_identity(
        self, profile_kind: str, profile_id, source_hash: str
    ) -> Optional[dict[str, Any]]:
        return await self.db.fetch_one(
            """
            SELECT * FROM character_identity_bibles
            WHERE profile_kind = $1 AND profile_id = $2 AND status = 'active' AND source_hash = $3
            ORDER BY version DESC
            LIMIT 1
            """,
            profile_kind,
            _uuid(profile_id),
            source_hash,
        )

    async def max_identity_version(self, profile_kind: str, profile_id) -> int:
        row = await self.db.fetch_one(
            """
            SELECT COALESCE(MAX(version), 0) AS max_version FROM character_identity_bibles
            WHERE profile_kind = $1 AND profile_id = $2
            """,
            profile_kind,
            _uuid(profile_id),
        )
        return int(row["max_version"]) if row else 0

    async def insert_identity_bible(
        self,
        universe_id,
        profile_kind: str,
        profile_id,
        version: int,
        source_hash: str,
        identity: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Raises:
            DuplicateVersionError: (profile_kind, profile_id, version) is taken
        """
        try:
            return await self.db.fetch_one(
                """
                INSERT INTO character_identity_bibles (
                    id, universe_id, profile_kind, profile_id, version, source_hash,
                    identity_bible_json, status
                ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, 'active')
                RETURNING *
                """,
                uuid4(),
                _uuid(universe_id) if universe_id else None,
                profile_kind,
                _uuid(profile_id),
                version,
                source_hash,
                safe_json_dumps(identity),
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateVersionError(str(e)) from e

    async def list_reference_images(self, identity_bible_id, kind: str = "portrait") -> list[dict]:
        return await self.db.fetch_all(
            """
            SELECT id, kind, image_url FROM character_identity_reference_images
            WHERE identity_bible_id = $1 AND kind = $2
            ORDER BY created_at DESC
            """,
            _uuid(identity_bible_id),
            kind,
        )

    async def insert_reference_image(
        self, identity_bible_id, kind: str, image_url: str, model: str, params: dict[str, Any]
    ) -> dict[str, Any]:
        return await self.db.fetch_one(
            """
            INSERT INTO character_identity_reference_images (
                id, identity_bible_id, kind, image_url, model, params_json
            ) VALUES ($1, $2, $3, $4, $5, $6::jsonb)
            RETURNING id, kind, image_url
            """,
            uuid4(),
            _uuid(identity_bible_id),
            kind,
            image_url,
            model,
            safe_json_dumps(params),
        )

    # Outfits
    async def get_story_outfit(self, story_id, profile_kind: str, profile_id) -> Optional[dict]:
        return await self.db.fetch_one(
            """
            SELECT * FROM story_character_outfits
            WHERE story_id = $1 AND profile_kind = $2 AND profile_id = $3
            """,
            _uuid(story_id),
            profile_kind,
            _uuid(profile_id),
        )

    async def insert_story_outfit(
        self, story_id, profile_kind: str, profile_id, outfit: dict[str, Any]
    ) -> dict[str, Any]:
        return await self.db.fetch_one(
            """
            INSERT INTO story_character_outfits (id, story_id, profile_kind, profile_id, outfit_json)
            VALUES ($1, $2, $3, $4, $5::jsonb)
            ON CONFLICT (story_id, profile_kind, profile_id)
            DO UPDATE SET outfit_json = EXCLUDED.outfit_json, updated_at = CURRENT_TIMESTAMP
            WHERE story_character_outfits.outfit_lock = FALSE
            RETURNING *
            """,
            uuid4(),
            _uuid(story_id),
            profile_kind,
            _uuid(profile_id),
            safe_json_dumps(outfit),
        )

    async def update_story_outfit(self, outfit_id, outfit: dict[str, Any]) -> dict[str, Any]:
        return await self.db.fetch_one(
            """
            UPDATE story_character_outfits
            SET outfit_json = $2::jsonb, updated_at = CURRENT_TIMESTAMP
            WHERE id = $1 AND outfit_lock = FALSE
            RETURNING *
            """,
            _uuid(outfit_id),
            safe_json_dumps(outfit),
        )

    async def set_outfit_lock(
        self, story_id, profile_kind: str, profile_id, locked: bool
    ) -> Optional[dict[str, Any]]:
        return await self.db.fetch_one(
            """
            UPDATE story_character_outfits
            SET outfit_lock = $4, updated_at = CURRENT_TIMESTAMP
            WHERE story_id = $1 AND profile_kind = $2 AND profile_id = $3
            RETURNING *
            """,
            _uuid(story_id),
            profile_kind,
            _uuid(profile_id),
            locked,
        )

    # Generation logs
    async def log_generation(
        self, universe_id, story_id, step: str, payload: dict, response: dict
    ) -> None:
        """Best-effort; a failed log row never interrupts generation"""
        try:
            await self.db.execute(
                """
                INSERT INTO generation_logs (id, universe_id, story_id, step, payload, response)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb)
                """,
                uuid4(),
                _uuid(universe_id) if universe_id else None,
                _uuid(story_id) if story_id else None,
                step,
                safe_json_dumps(payload),
                safe_json_dumps(response),
            )
        except Exception as e:
            logger.warning(f"⚠️ GENERATION_LOG: Failed to write {step} log row: {e}")
