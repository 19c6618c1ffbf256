"""Background illustration runs: cover first, then pages in bounded batches"""

import asyncio
import logging
from typing import Any, Optional

from models import PENDING_IMAGE_STATUSES, ImageMode
from page_illustration import MISSING_STYLE_BIBLE, MissingStyleBibleError, PageIllustrator
from story_pages import build_story_page_texts
from story_store import StoryPageNotFoundError, StoryStore

from shared.llm_client import is_transient_error
from shared.pipeline_config import DEFAULT_SETTINGS, PipelineSettings

logger = logging.getLogger(__name__)

# Stories with a run in flight in this process
running_stories: set[str] = set()
_story_tasks: dict[str, asyncio.Task] = {}

_PENDING_STATUS_VALUES = {status.value for status in PENDING_IMAGE_STATUSES}


def _image_mode(story: dict[str, Any]) -> ImageMode:
    return ImageMode.BEST if story.get("image_mode") == ImageMode.BEST.value else ImageMode.FAST


class IllustrationJobRunner:
    """
    Starts and tracks illustration runs for stories.

    At most one run per story is in flight per process; a second start while a
    run is active returns started=False. Page failures are recorded on the page
    row and never escape the run.
    """

    def __init__(
        self,
        store: StoryStore,
        illustrator: PageIllustrator,
        settings: PipelineSettings = DEFAULT_SETTINGS,
        running: Optional[set[str]] = None,
    ):
        self.store = store
        self.illustrator = illustrator
        self.settings = settings
        self.running = running if running is not None else running_stories

    async def _load_pages(self, story: dict[str, Any]) -> list[dict[str, Any]]:
        pages = await self.store.list_story_pages(story["id"])
        if pages:
            return pages

        # Stories saved before pagination get their pages built on first run
        texts = build_story_page_texts(story.get("content") or "", story.get("length_minutes") or 10)
        await self.store.insert_story_pages_ignore_duplicates(
            story["id"], [(p.page_index, p.text) for p in texts]
        )
        logger.info(f"📄 ILLUSTRATION: Paginated story {story['id']} into {len(texts)} pages")
        return await self.store.list_story_pages(story["id"])

    async def start_story_illustration_generation(self, story_id) -> dict[str, bool]:
        """
        Kick off cover + page illustration for every page still pending.

        Returns:
            {"started": True} when a background run was scheduled, otherwise
            {"started": False} (run already in flight or nothing pending)

        Raises:
            StoryNotFoundError: Unknown story
        """
        key = str(story_id)
        if key in self.running:
            logger.info(f"⏳ ILLUSTRATION: Run already in flight for story {key}")
            return {"started": False}
        self.running.add(key)

        try:
            story = await self.store.get_story(key)
            mode = _image_mode(story)
            pages = await self._load_pages(story)
        except Exception:
            self.running.discard(key)
            raise

        pending = [p for p in pages if p["image_status"] in _PENDING_STATUS_VALUES]
        if not pending:
            self.running.discard(key)
            return {"started": False}

        print(
            f"🎨 ILLUSTRATION: Starting story {key} ({len(pending)} pages, mode={mode.value})",
            flush=True,
        )
        _story_tasks[key] = asyncio.create_task(self._run(key, pending, mode))
        return {"started": True}

    async def _run(self, story_id: str, pending: list[dict[str, Any]], mode: ImageMode) -> None:
        try:
            try:
                await self._process_cover(story_id, mode)
            except MissingStyleBibleError:
                raise
            except Exception as e:
                logger.error(f"❌ ILLUSTRATION: Cover failed for story {story_id}, continuing with pages: {e}")

            await self._process_in_batches(story_id, pending, mode)
        except MissingStyleBibleError:
            logger.error(f"❌ ILLUSTRATION: Story {story_id} has no style bible, failing unfinished pages")
            await self.store.fail_unfinished_pages(story_id, MISSING_STYLE_BIBLE)
        except Exception as e:
            logger.error(f"❌ ILLUSTRATION: Run for story {story_id} aborted: {e}")
        finally:
            self.running.discard(story_id)
            _story_tasks.pop(story_id, None)

    async def _process_cover(self, story_id: str, mode: ImageMode) -> None:
        cover = await self.illustrator.generate_cover_image(story_id, mode)
        await self.store.update_story_cover(
            story_id, cover["image_url"], cover["image_prompt"], cover["image_model"]
        )
        logger.info(f"🖼️ ILLUSTRATION: Cover ready for story {story_id}")

    async def _process_in_batches(
        self, story_id: str, pages: list[dict[str, Any]], mode: ImageMode
    ) -> None:
        batch_size = self.settings.image_batch_size
        for start in range(0, len(pages), batch_size):
            batch = pages[start : start + batch_size]
            await asyncio.gather(*(self.process_one_page(page, mode) for page in batch))

        if pages:
            await self._sync_cover_from_first_page(story_id)

    async def _sync_cover_from_first_page(self, story_id: str) -> None:
        try:
            first_page = await self.store.get_story_page(story_id, 0)
        except StoryPageNotFoundError:
            return
        if first_page.get("image_url"):
            await self.store.sync_cover_from_first_page(story_id, first_page["image_url"])

    async def process_one_page(self, page: dict[str, Any], mode: ImageMode) -> bool:
        """
        Illustrate one page with retry on transient provider errors.

        Returns:
            True when the page ended ready, False when it was marked failed
        """
        page_id = page["id"]
        label = f"story {page['story_id']} page {page['page_index']}"
        try:
            await self.store.set_page_generating(page_id)

            attempt = 0
            while True:
                attempt += 1
                try:
                    result = await self.illustrator.generate_page_image(page, mode)
                    break
                except Exception as e:
                    transient = is_transient_error(e, self.settings.transient_status_codes)
                    if attempt >= self.settings.image_max_attempts or not transient:
                        raise
                    delay_ms = self.settings.image_backoff_base_ms * 2 ** (attempt - 1)
                    logger.warning(
                        f"🔁 ILLUSTRATION: {label} attempt {attempt} failed ({e}), retrying in {delay_ms}ms"
                    )
                    await asyncio.sleep(delay_ms / 1000)

            await self.store.mark_page_ready(page_id, result)
            logger.info(f"✅ ILLUSTRATION: {label} ready")
            return True

        except Exception as e:
            message = str(e) or "Illustration generation failed."
            logger.error(f"❌ ILLUSTRATION: {label} failed: {message}")
            try:
                await self.store.mark_page_failed(page_id, message)
            except Exception as store_error:
                logger.error(f"❌ ILLUSTRATION: Could not record failure for {label}: {store_error}")
            return False

    async def regenerate_story_page(self, story_id, page_index: int) -> bool:
        """
        Re-illustrate one page in the foreground using the story's image mode.

        Raises:
            StoryPageNotFoundError: No page at that index
            StoryNotFoundError: Unknown story
        """
        page = await self.store.get_story_page(story_id, page_index)
        story = await self.store.get_story(story_id)
        return await self.process_one_page(page, _image_mode(story))


async def wait_for_story(story_id) -> None:
    """Await the in-flight run for a story, if any"""
    task = _story_tasks.get(str(story_id))
    if task is not None:
        await task


async def wait_for_all() -> None:
    """Await every in-flight run (shutdown)"""
    tasks = list(_story_tasks.values())
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
