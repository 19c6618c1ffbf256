"""Repetition detection and rewrite-output cleanup for finished story prose"""

import json
import re
from typing import Optional

from models import RewriteOutput
from pydantic import BaseModel

from shared.structured_output import parse_json_object_flexible

END_MARKER = "<END>"

_NON_WORD_CHARS = re.compile(r"[^a-z0-9']")
_WHITESPACE = re.compile(r"\s+")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


class RepetitionReport(BaseModel):
    trigram_repeat_ratio: float
    repeated_paragraph_count: int
    repeated_trigram_examples: list[str] = []
    has_problem: bool


def _normalize_word(word: str) -> str:
    return _NON_WORD_CHARS.sub("", word.lower())


def _tokenize_words(text: str) -> list[str]:
    words = (_normalize_word(w) for w in _WHITESPACE.split(text or ""))
    return [w for w in words if w]


def repeated_trigrams(text: str) -> tuple[float, list[str]]:
    """
    Share of trigram occurrences that repeat an earlier trigram.

    Returns:
        (ratio, first five repeated trigrams in order of first appearance)
    """
    words = _tokenize_words(text)
    if len(words) < 6:
        return 0.0, []

    counts: dict[str, int] = {}
    for i in range(len(words) - 2):
        trigram = f"{words[i]} {words[i + 1]} {words[i + 2]}"
        counts[trigram] = counts.get(trigram, 0) + 1

    repeats = [(trigram, count) for trigram, count in counts.items() if count >= 2]
    repeated_occurrences = sum(count - 1 for _, count in repeats)
    ratio = repeated_occurrences / max(1, len(words) - 2)
    return ratio, [trigram for trigram, _ in repeats[:5]]


def repeated_paragraph_count(text: str) -> int:
    paragraphs = [p.strip().lower() for p in _PARAGRAPH_BREAK.split(text or "")]
    counts: dict[str, int] = {}
    for paragraph in paragraphs:
        if paragraph:
            counts[paragraph] = counts.get(paragraph, 0) + 1
    return sum(1 for count in counts.values() if count > 1)


def detect_repetition(
    text: str, threshold: float = 0.02, max_duplicate_paragraphs: int = 0
) -> RepetitionReport:
    ratio, examples = repeated_trigrams(text)
    duplicates = repeated_paragraph_count(text)
    return RepetitionReport(
        trigram_repeat_ratio=ratio,
        repeated_paragraph_count=duplicates,
        repeated_trigram_examples=examples,
        has_problem=ratio > threshold or duplicates > max_duplicate_paragraphs,
    )


def strip_end_marker(text: str) -> str:
    """Drop the end marker and anything the model wrote after it"""
    idx = text.find(END_MARKER)
    if idx == -1:
        return text.strip()
    return text[:idx].strip()


def _normalize_paragraph(paragraph: str) -> str:
    return _WHITESPACE.sub(" ", paragraph).strip().lower()


def cleanup_trailing_duplicate_ending_paragraphs(text: str) -> str:
    """Collapse a run of identical closing paragraphs down to one"""
    normalized = (text or "").replace("\r\n", "\n").strip()
    if not normalized:
        return ""

    paragraphs = [p.strip() for p in _PARAGRAPH_BREAK.split(normalized)]
    paragraphs = [p for p in paragraphs if p]
    if len(paragraphs) < 2:
        return "\n\n".join(paragraphs)

    ending = _normalize_paragraph(paragraphs[-1])
    duplicate_count = 1
    for paragraph in reversed(paragraphs[:-1]):
        if _normalize_paragraph(paragraph) != ending:
            break
        duplicate_count += 1

    if duplicate_count < 2:
        return "\n\n".join(paragraphs)

    return "\n\n".join(paragraphs[: len(paragraphs) - duplicate_count] + [paragraphs[-1]])


def sanitize_final_story_text(text: str) -> str:
    return cleanup_trailing_duplicate_ending_paragraphs(strip_end_marker(text or ""))


def build_rewrite_prompt(
    tone: str,
    outline: dict,
    draft: str,
    min_words: int,
    max_words: int,
    extra_notes: Optional[str] = None,
) -> str:
    lines = [
        "You are editing a children's story for quality.",
        f"Target words: {min_words}-{max_words}.",
        f"Tone: {tone}.",
        "Step 1: write a brief critique (4-8 bullet points) focusing on repetition, pacing, distinct scenes, and emotional payoff.",
        "Step 2: rewrite the story to fix those issues.",
        "Rewrite rules:",
        "- preserve core plot and ending payoff from outline",
        "- reduce repeated phrases and vary sentence openings",
        "- no scary violence, no gore, no explicit content",
        "- keep age-appropriate for 4-7",
        "- narrative prose only",
        "- do NOT add filler to reach length",
        "- if too short, add ONE new micro-scene with a new event instead of repeating content",
        "- ensure the ending paragraph is unique and appears exactly once",
        f"- end the revised story with exactly one {END_MARKER} marker on its own line",
        f"Additional fix: {extra_notes}" if extra_notes else "",
        "Return JSON only with keys: critique, revised_story",
        "Outline JSON:",
        json.dumps(outline),
        "Draft story:",
        draft,
    ]
    return "\n".join(line for line in lines if line)


def parse_rewrite_json(raw: str) -> RewriteOutput:
    """
    Parse a rewrite response and clean the revised story.

    Raises:
        ValueError: No JSON object, or the revised story is empty after cleanup
    """
    parsed = parse_json_object_flexible(raw)
    if not isinstance(parsed, dict):
        raise ValueError("Rewrite output is not a JSON object.")

    critique = parsed.get("critique")
    revised_raw = parsed.get("revised_story")
    revised = sanitize_final_story_text(revised_raw.strip() if isinstance(revised_raw, str) else "")
    if not revised:
        raise ValueError("Missing revised_story in rewrite output.")

    return RewriteOutput(
        critique=critique.strip() if isinstance(critique, str) else critique,
        revised_story=revised,
    )
