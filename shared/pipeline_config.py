# shared/pipeline_config.py
"""
Tunable constants for the story pipeline.
Stored as JSON in system_config under 'story_pipeline_settings' and cached in Redis.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from pydantic import BaseModel, Field

from shared.json_utils import safe_json_dumps, safe_json_parse

logger = logging.getLogger(__name__)

SETTINGS_CONFIG_KEY = "story_pipeline_settings"


class PipelineSettings(BaseModel):
    """Retry budgets, thresholds and caps used across planning, drafting and illustration"""

    text_model: str = "gpt-4.1-mini"

    repetition_trigram_threshold: float = Field(default=0.02, ge=0, le=1)
    repetition_max_duplicate_paragraphs: int = Field(default=0, ge=0)

    ledger_fact_cap: int = Field(default=60, ge=1)
    ledger_thread_cap: int = Field(default=30, ge=1)

    image_max_attempts: int = Field(default=3, ge=1)
    image_backoff_base_ms: int = Field(default=250, ge=0)
    image_batch_size: int = Field(default=4, ge=1)
    transient_status_codes: list[int] = [429, 500, 502, 503]

    identity_insert_attempts: int = Field(default=3, ge=1)


DEFAULT_SETTINGS = PipelineSettings()


class PipelineSettingsCache:
    """Redis-based read-through cache for pipeline settings"""

    def __init__(self, redis_client: Optional[redis.Redis]):
        self.redis = redis_client
        self.cache_ttl = 15 * 60  # 15 minutes TTL

    def _get_cache_key(self) -> str:
        return f"pipeline_config:{SETTINGS_CONFIG_KEY}"

    async def get(self) -> Optional[PipelineSettings]:
        if self.redis is None:
            return None
        try:
            cached_data = await self.redis.get(self._get_cache_key())
            if cached_data:
                cached_str = cached_data.decode() if isinstance(cached_data, bytes) else cached_data
                payload = safe_json_parse(cached_str, expected_type=dict)
                if payload:
                    logger.debug("Cache hit for pipeline settings")
                    return PipelineSettings.model_validate(payload)
        except Exception as e:
            logger.warning(f"Failed to get pipeline settings from cache: {e}")
        return None

    async def set(self, settings: PipelineSettings) -> bool:
        if self.redis is None:
            return False
        try:
            await self.redis.setex(
                self._get_cache_key(), self.cache_ttl, safe_json_dumps(settings.model_dump())
            )
            return True
        except Exception as e:
            logger.warning(f"Failed to cache pipeline settings: {e}")
            return False

    async def invalidate(self) -> bool:
        if self.redis is None:
            return False
        try:
            return bool(await self.redis.delete(self._get_cache_key()))
        except Exception as e:
            logger.warning(f"Failed to invalidate pipeline settings cache: {e}")
            return False


async def load_pipeline_settings(db=None, redis_client: Optional[redis.Redis] = None) -> PipelineSettings:
    """
    Load pipeline settings: Redis cache -> system_config row -> defaults.

    Partial rows are merged over the defaults. Never raises; any failure
    falls back to DEFAULT_SETTINGS.
    """
    cache = PipelineSettingsCache(redis_client)
    cached = await cache.get()
    if cached:
        return cached

    if db is None:
        return DEFAULT_SETTINGS

    try:
        row = await db.fetch_one("SELECT value FROM system_config WHERE key = $1", SETTINGS_CONFIG_KEY)
        if not row or not row.get("value"):
            return DEFAULT_SETTINGS

        overrides = safe_json_parse(row["value"], default={}, expected_type=dict)
        settings = PipelineSettings.model_validate({**DEFAULT_SETTINGS.model_dump(), **overrides})
        await cache.set(settings)
        logger.info("✅ Loaded story pipeline settings from database")
        return settings

    except Exception as e:
        logger.warning(f"⚠️ Failed to load pipeline settings, using defaults: {e}")
        return DEFAULT_SETTINGS
