# services/story/main.py
import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv()

# Force unbuffered output for Railway
os.environ["PYTHONUNBUFFERED"] = "1"

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from illustration_jobs import wait_for_all
from story_routes import router as story_router

from shared.database import close_db, get_db, init_db
from shared.generation_cost_logger import GenerationCostLogger, configure_cost_logger
from shared.llm_pricing import load_pricing_from_db
from shared.middleware import add_middleware_to_app
from shared.redis_client import close_redis, init_redis


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    db = await get_db()
    configure_cost_logger(GenerationCostLogger(db))
    await load_pricing_from_db(db)

    try:
        await init_redis()
    except Exception as e:
        logger.warning(f"⚠️ Redis unavailable, pipeline settings will not be cached: {e}")

    logger.info("Story service started successfully")
    yield

    # Let in-flight illustration runs record their page outcomes before the pool closes
    logger.info("Shutting down story service...")
    await wait_for_all()
    configure_cost_logger(None)
    await close_db()
    await close_redis()


# Create FastAPI app
app = FastAPI(
    title="Bedtime Story Service",
    description="Story planning, drafting and illustration for family story universes",
    version="1.0.0",
    lifespan=lifespan,
)

endpoint_limits = {
    "/stories/generate": 50 * 1024,  # 50KB for generation requests
    "/stories": 2 * 1024 * 1024,  # 2MB for saving full story text + plan
}

add_middleware_to_app(
    app=app,
    service_name="story",
    max_request_size=5 * 1024 * 1024,
    endpoint_limits=endpoint_limits,
    log_requests=True,
)

# CORS middleware (executed first)
allowed_origins = os.getenv("ALLOWED_ORIGINS", "*").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(story_router, tags=["stories"])


@app.get("/")
async def root():
    return {"message": "Bedtime Story Service is running", "version": "1.0.0"}


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "story"}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8006))
    uvicorn.run(app, host="0.0.0.0", port=port)
