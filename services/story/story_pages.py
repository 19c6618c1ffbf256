"""Split finished story prose into illustrated pages"""

import math
import re

from models import StoryPageText

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_BREAK = re.compile(r"\.\s+")

MAX_TOTAL_PAGES = 120


def split_paragraphs(content: str) -> list[str]:
    """Blank-line paragraphs, or sentence pieces when the text has no paragraph breaks"""
    paragraphs = [p.strip() for p in _PARAGRAPH_BREAK.split(content or "")]
    paragraphs = [p for p in paragraphs if p]
    if len(paragraphs) > 1:
        return paragraphs

    sentences = [s.strip() for s in _SENTENCE_BREAK.split(content or "")]
    return [s if s.endswith(".") else f"{s}." for s in sentences if s]


def chunk_evenly(items: list[str], chunk_count: int) -> list[str]:
    if chunk_count <= 1:
        return ["\n\n".join(items)]

    size = math.ceil(len(items) / chunk_count)
    return ["\n\n".join(items[i : i + size]) for i in range(0, len(items), size)]


def build_story_page_texts(content: str, length_minutes: int) -> list[StoryPageText]:
    """
    Group story paragraphs into contiguous pages.

    One slot of the length-derived page budget is kept for the cover, so a
    story gets at most (minutes * 2) - 1 text pages, and never more pages than
    it has paragraphs.

    Args:
        content: Full story prose
        length_minutes: Reading length the story was generated for

    Returns:
        Pages indexed from 0 in reading order
    """
    max_total_pages = max(2, min(MAX_TOTAL_PAGES, length_minutes * 2))
    content_page_limit = max(1, max_total_pages - 1)
    paragraphs = split_paragraphs(content)
    desired_pages = min(content_page_limit, max(1, len(paragraphs)))
    chunks = chunk_evenly(paragraphs, desired_pages)[:content_page_limit]

    return [StoryPageText(page_index=i, text=text) for i, text in enumerate(chunks)]
