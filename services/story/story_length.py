"""Reading-length targets: minutes to word budgets, and word counting"""

import math
import re

from pydantic import BaseModel

WORDS_PER_MINUTE = 160
MIN_WORDS = 500
MAX_WORDS = 4000

_WHITESPACE = re.compile(r"\s+")


class WordTargets(BaseModel):
    target: int
    min: int
    max: int


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def get_word_targets(length_minutes: int) -> WordTargets:
    """
    Word count window for a reading length.

    The common bedtime lengths (5/10/20 min) use fixed windows; anything
    longer is derived from a read-aloud pace and clamped.
    """
    if length_minutes <= 5:
        return WordTargets(target=825, min=700, max=950)
    if length_minutes <= 10:
        return WordTargets(target=1500, min=1300, max=1700)
    if length_minutes <= 20:
        return WordTargets(target=3000, min=2600, max=3400)

    target = max(MIN_WORDS, min(MAX_WORDS, round_half_up(length_minutes * WORDS_PER_MINUTE)))
    return WordTargets(
        target=target,
        min=max(MIN_WORDS, round_half_up(target * 0.85)),
        max=min(MAX_WORDS, round_half_up(target * 1.15)),
    )


def count_words(text: str) -> int:
    normalized = (text or "").strip()
    if not normalized:
        return 0
    return len(_WHITESPACE.split(normalized))


def get_paragraph_guidance(length_minutes: int) -> str:
    if length_minutes <= 5:
        return "Use 8-12 short paragraphs."
    if length_minutes <= 10:
        return "Use 10-18 short paragraphs."
    if length_minutes <= 20:
        return "Use 18-30 short paragraphs."
    return "Use many short paragraphs with a clear beginning, middle, and satisfying ending."


def scene_count_for_length(length_minutes: int) -> int:
    if length_minutes <= 5:
        return 6
    if length_minutes <= 10:
        return 8
    return 12
