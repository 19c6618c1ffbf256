# shared/database.py
import os
import ssl
from contextlib import asynccontextmanager
from typing import Any, Optional

import asyncpg

DATABASE_URL = os.getenv("DATABASE_URL")

if not DATABASE_URL:
    # Build from individual components if DATABASE_URL not provided
    DB_HOST = os.getenv("DB_HOST", "localhost")
    DB_PORT = os.getenv("DB_PORT", "5432")
    DB_NAME = os.getenv("DB_NAME", "bedtime_stories")
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_PASSWORD = os.getenv("DB_PASSWORD", "")

    DATABASE_URL = f"postgresql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
else:
    # asyncpg only accepts the postgresql:// scheme
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

# Connection pool
_pool: Optional[asyncpg.Pool] = None


class Database:
    """Database wrapper for asyncpg with connection pooling"""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def fetch_one(self, query: str, *args) -> Optional[dict[str, Any]]:
        """Fetch a single row"""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
            return dict(row) if row else None

    async def fetch_all(self, query: str, *args) -> list[dict[str, Any]]:
        """Fetch multiple rows"""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
            return [dict(row) for row in rows]

    async def execute(self, query: str, *args) -> str:
        """Execute a query without returning results"""
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)

    async def execute_schema(self, query: str, *args) -> str:
        """Execute a schema/DDL query with extended timeout"""
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args, timeout=300)

    async def execute_many(self, query: str, args_list: list[tuple]) -> None:
        """Execute a query multiple times with different arguments"""
        async with self.pool.acquire() as conn:
            await conn.executemany(query, args_list)

    @asynccontextmanager
    async def transaction(self):
        """Context manager for database transactions"""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn


async def init_db():
    """Initialize database connection pool"""
    import logging

    logger = logging.getLogger(__name__)
    global _pool

    try:
        logger.info("Starting database initialization...")

        ssl_context = None
        environment = os.getenv("ENVIRONMENT", "development")

        if environment in ["production", "staging"]:
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        # Illustration batches hold a few connections each while pages update
        min_size = int(os.getenv("DB_POOL_MIN_SIZE", 3))
        max_size = int(os.getenv("DB_POOL_MAX_SIZE", 10))

        logger.info(f"Creating database connection pool (min: {min_size}, max: {max_size})...")
        _pool = await asyncpg.create_pool(
            DATABASE_URL,
            ssl=ssl_context,
            min_size=min_size,
            max_size=max_size,
            max_queries=50000,
            max_cached_statement_lifetime=300,
            command_timeout=30,
            max_inactive_connection_lifetime=300,
        )
        logger.info("Database connection pool created successfully")

        skip_schema_init = os.getenv("SKIP_SCHEMA_INIT", "false").lower() == "true"
        if not skip_schema_init:
            logger.info("Starting schema creation/update...")
            await create_tables()
            logger.info("Schema creation/update completed")
        else:
            logger.info("Skipping schema initialization (SKIP_SCHEMA_INIT=true)")

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        if _pool:
            await _pool.close()
            _pool = None
        raise


async def close_db():
    """Close database connection pool"""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None


async def get_db() -> Database:
    """Dependency to get database instance"""
    if not _pool:
        await init_db()
    return Database(_pool)


async def create_tables():
    """Create database tables if they don't exist"""
    import logging

    logger = logging.getLogger(__name__)

    db = await get_db()
    logger.info("Starting database schema creation/update...")

    await db.execute("SELECT 1")
    logger.info("Database connection verified")

    # Universes and the family profiles that populate them
    await db.execute_schema(
        """
        CREATE TABLE IF NOT EXISTS universes (
            id UUID PRIMARY KEY,
            name VARCHAR(255) NOT NULL,
            created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS character_profiles (
            id UUID PRIMARY KEY,
            universe_id UUID REFERENCES universes(id) ON DELETE CASCADE,
            profile_kind VARCHAR(10) NOT NULL CHECK (profile_kind IN ('kid', 'adult')),
            display_name VARCHAR(100) NOT NULL,
            age INTEGER,
            themes TEXT[] DEFAULT '{}',
            books_we_like TEXT[] DEFAULT '{}',
            persona_label VARCHAR(100),
            profile_photo_url TEXT,
            profile_attributes_json JSONB DEFAULT '{}',
            created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
        );

        CREATE INDEX IF NOT EXISTS idx_character_profiles_universe
        ON character_profiles(universe_id, profile_kind);
    """
    )

    # Stories and their plans
    await db.execute_schema(
        """
        CREATE TABLE IF NOT EXISTS stories (
            id UUID PRIMARY KEY,
            universe_id UUID REFERENCES universes(id) ON DELETE CASCADE,
            title VARCHAR(500) NOT NULL,
            content TEXT NOT NULL DEFAULT '',
            length_minutes INTEGER NOT NULL DEFAULT 10,
            audience_age INTEGER,
            tone VARCHAR(20) NOT NULL DEFAULT 'calm',
            story_spark VARCHAR(30),
            stage TEXT,
            arc_summary TEXT,
            prompt JSONB DEFAULT '{}',
            style_bible TEXT,
            style_id VARCHAR(100),
            image_mode VARCHAR(10) NOT NULL DEFAULT 'fast' CHECK (image_mode IN ('fast', 'best')),
            image_model VARCHAR(50),
            cover_image_url TEXT,
            cover_prompt TEXT,
            first_page_image_url TEXT,
            status VARCHAR(20) NOT NULL DEFAULT 'draft',
            word_count INTEGER,
            created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
        );

        CREATE INDEX IF NOT EXISTS idx_stories_universe ON stories(universe_id, created_at DESC);

        CREATE TABLE IF NOT EXISTS story_bibles (
            story_id UUID PRIMARY KEY REFERENCES stories(id) ON DELETE CASCADE,
            story_bible_json JSONB NOT NULL,
            beat_sheet_json JSONB NOT NULL,
            continuity_ledger_json JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS story_characters (
            id UUID PRIMARY KEY,
            story_id UUID REFERENCES stories(id) ON DELETE CASCADE,
            character_type VARCHAR(10) NOT NULL CHECK (character_type IN ('kid', 'adult', 'custom')),
            character_id UUID,
            custom_name VARCHAR(100),
            identity_bible_id UUID,
            outfit_id UUID,
            created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
        );

        CREATE INDEX IF NOT EXISTS idx_story_characters_story ON story_characters(story_id);
    """
    )

    # Paginated text + illustration state
    await db.execute_schema(
        """
        CREATE TABLE IF NOT EXISTS story_pages (
            id UUID PRIMARY KEY,
            story_id UUID REFERENCES stories(id) ON DELETE CASCADE,
            page_index INTEGER NOT NULL,
            text TEXT NOT NULL,
            image_status VARCHAR(20) NOT NULL DEFAULT 'pending'
                CHECK (image_status IN ('pending', 'not_started', 'generating', 'ready', 'failed')),
            image_path TEXT,
            image_url TEXT,
            image_prompt TEXT,
            image_error TEXT,
            scene_json JSONB,
            image_prompt_json JSONB,
            prompt_json JSONB,
            image_model VARCHAR(50),
            image_quality VARCHAR(20),
            image_size VARCHAR(20),
            image_generated_at TIMESTAMP WITH TIME ZONE,
            used_reference_image_ids UUID[] DEFAULT '{}',
            created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (story_id, page_index)
        );

        CREATE INDEX IF NOT EXISTS idx_story_pages_status ON story_pages(story_id, image_status);
    """
    )

    # Visual identity + per-story outfits
    await db.execute_schema(
        """
        CREATE TABLE IF NOT EXISTS character_identity_bibles (
            id UUID PRIMARY KEY,
            universe_id UUID,
            profile_kind VARCHAR(10) NOT NULL CHECK (profile_kind IN ('kid', 'adult')),
            profile_id UUID NOT NULL,
            version INTEGER NOT NULL,
            source_hash VARCHAR(64) NOT NULL,
            identity_bible_json JSONB NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'active',
            created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (profile_kind, profile_id, version)
        );

        CREATE INDEX IF NOT EXISTS idx_identity_bibles_lookup
        ON character_identity_bibles(profile_kind, profile_id, status, source_hash, version DESC);

        CREATE TABLE IF NOT EXISTS character_identity_reference_images (
            id UUID PRIMARY KEY,
            identity_bible_id UUID REFERENCES character_identity_bibles(id) ON DELETE CASCADE,
            kind VARCHAR(20) NOT NULL CHECK (kind IN ('portrait', 'full_body')),
            image_url TEXT NOT NULL,
            model VARCHAR(50),
            params_json JSONB DEFAULT '{}',
            created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
        );

        CREATE INDEX IF NOT EXISTS idx_identity_reference_images
        ON character_identity_reference_images(identity_bible_id, kind, created_at DESC);

        CREATE TABLE IF NOT EXISTS story_character_outfits (
            id UUID PRIMARY KEY,
            story_id UUID REFERENCES stories(id) ON DELETE CASCADE,
            profile_kind VARCHAR(10) NOT NULL CHECK (profile_kind IN ('kid', 'adult')),
            profile_id UUID NOT NULL,
            outfit_json JSONB NOT NULL,
            outfit_lock BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (story_id, profile_kind, profile_id)
        );
    """
    )

    # Cost ledger, generation logs and config
    await db.execute_schema(
        """
        CREATE TABLE IF NOT EXISTS generation_costs (
            id UUID PRIMARY KEY,
            story_id UUID REFERENCES stories(id) ON DELETE CASCADE,
            page_number INTEGER,
            step VARCHAR(100) NOT NULL,
            provider VARCHAR(50) NOT NULL DEFAULT 'openai',
            model VARCHAR(100) NOT NULL,
            input_tokens INTEGER NOT NULL DEFAULT 0,
            output_tokens INTEGER NOT NULL DEFAULT 0,
            total_tokens INTEGER NOT NULL DEFAULT 0,
            cached_input_tokens INTEGER,
            reasoning_tokens INTEGER,
            cost_usd NUMERIC(12, 6) NOT NULL DEFAULT 0,
            response_id VARCHAR(255),
            created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
        );

        CREATE INDEX IF NOT EXISTS idx_generation_costs_story
        ON generation_costs(story_id, created_at);

        CREATE TABLE IF NOT EXISTS generation_logs (
            id UUID PRIMARY KEY,
            universe_id UUID,
            story_id UUID,
            step VARCHAR(100) NOT NULL,
            payload JSONB DEFAULT '{}',
            response JSONB DEFAULT '{}',
            created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS system_config (
            key VARCHAR(100) PRIMARY KEY,
            value JSONB NOT NULL,
            description TEXT,
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
        );
    """
    )

    logger.info("Database schema creation/update completed successfully")
