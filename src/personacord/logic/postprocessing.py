"""Clean up raw model output before it is returned."""

from __future__ import annotations

import hashlib
import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING

from personacord.logic.prompt import replace_placeholders

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

# Within one response
MIN_LENGTH_FOR_DUPLICATION_CHECK = 100
ANCHOR_LENGTH = 30
INTRA_TURN_SIMILARITY_THRESHOLD = 0.8
_MIN_LENGTH_RATIO = 0.5
_MAX_LENGTH_RATIO = 2.0

# Across turns
CROSS_TURN_SIMILARITY_THRESHOLD = 0.85
WORD_JACCARD_THRESHOLD = 0.75
NEAR_MISS_THRESHOLD = 0.7
MIN_LENGTH_FOR_SIMILARITY_CHECK = 30
THINKING_SEPARATOR = "\n\n---\n\n"

_THINKING_BLOCK_RE = re.compile(
    r"<(think|thinking|reasoning)>(.*?)(?:</\1>|$)",
    re.IGNORECASE | re.DOTALL,
)
_TRAILING_CLOSING_TAG_RE = re.compile(r"(?:\s*</[a-z][\w-]*>)+\s*$", re.IGNORECASE)
_LEADING_LAST_MESSAGE_RE = re.compile(
    r"^\s*<last_message>.*?</last_message>\s*",
    re.IGNORECASE | re.DOTALL,
)
_LEADING_FROM_RE = re.compile(r"^\s*<from(?:\s[^>]*)?>[^<]*</from>\s*", re.IGNORECASE)
_TRAILING_REACTIONS_RE = re.compile(
    r"\s*<reactions>(?:(?!</?reactions>).)*</reactions>\s*$",
    re.IGNORECASE | re.DOTALL,
)
_LEADING_TIMESTAMP_RE = re.compile(r"^\s*\[(?:now|[^\]\n]{1,30}\bago)\]\s*", re.IGNORECASE)
_EMPHASIS_RE = re.compile(r"[*_~]{1,2}([^*_~]+)[*_~]{1,2}")
_NON_WORD_RE = re.compile(r"[^\w\s']")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class ThinkingExtraction:
    """Visible text with reasoning blocks removed."""

    visible_content: str
    thinking_content: str | None


@dataclass(frozen=True, slots=True)
class PostProcessResult:
    """Outcome of the post-processing chain."""

    content: str
    thinking_content: str | None
    artifacts_stripped: bool
    duplicate_removed: bool
    raw_length: int


def extract_thinking_blocks(content: str) -> ThinkingExtraction:
    """Split ``<think>``/``<thinking>``/``<reasoning>`` blocks out of `content`.

    An unclosed block runs to the end of the text.
    """
    blocks = [match.group(2).strip() for match in _THINKING_BLOCK_RE.finditer(content)]
    if not blocks:
        return ThinkingExtraction(visible_content=content, thinking_content=None)
    visible = _THINKING_BLOCK_RE.sub("", content).strip()
    thinking = "\n\n".join(block for block in blocks if block) or None
    return ThinkingExtraction(visible_content=visible, thinking_content=thinking)


def merge_thinking_content(
    api_reasoning: str | None,
    inline_thinking: str | None,
) -> str | None:
    """Join provider reasoning and inline thinking, provider first."""
    parts = [part for part in (api_reasoning, inline_thinking) if part]
    if not parts:
        return None
    return THINKING_SEPARATOR.join(parts)


def strip_response_artifacts(content: str, personality_name: str) -> str:
    """Remove prompt-format echoes the model sometimes emits.

    Strips, when they sit at the edges of the response: trailing closing
    tags, a leading ``<last_message>`` block, a leading ``<from>`` tag, a
    leading ``<message speaker="Name">`` tag, a trailing ``<reactions>``
    block, a ``Name:`` prefix (optionally followed by a timestamp) and a
    leading timestamp such as ``[2m ago]``.
    """
    if not content:
        return content

    escaped_name = re.escape(personality_name)
    message_tag = re.compile(
        rf"""^\s*<message\s+speaker=(["']){escaped_name}\1[^>]*>""",
        re.IGNORECASE,
    )
    name_prefix = re.compile(
        rf"^\s*{escaped_name}:\s*(?:\[[^\]\n]{{1,30}}\]\s*)?",
        re.IGNORECASE,
    )

    cleaned = content
    previous = None
    while previous != cleaned:
        previous = cleaned
        cleaned = _TRAILING_REACTIONS_RE.sub("", cleaned)
        cleaned = _TRAILING_CLOSING_TAG_RE.sub("", cleaned)
        cleaned = _LEADING_LAST_MESSAGE_RE.sub("", cleaned, count=1)
        cleaned = _LEADING_FROM_RE.sub("", cleaned, count=1)
        cleaned = message_tag.sub("", cleaned, count=1)
        cleaned = name_prefix.sub("", cleaned, count=1)
        cleaned = _LEADING_TIMESTAMP_RE.sub("", cleaned, count=1)

    if cleaned != content:
        logger.debug(
            "Stripped response artifacts (%s -> %s chars)",
            len(content),
            len(cleaned),
        )
    return cleaned.strip() if cleaned != content else content


def string_similarity(first: str, second: str) -> float:
    """Return the Dice coefficient of character bigrams (case-insensitive)."""
    if first == second:
        return 1.0
    left = first.lower().strip()
    right = second.lower().strip()
    if left == right:
        return 1.0
    if not left or not right:
        return 0.0
    if len(left) == 1 or len(right) == 1:
        return 0.0

    left_bigrams = Counter(left[i : i + 2] for i in range(len(left) - 1))
    right_bigrams = Counter(right[i : i + 2] for i in range(len(right) - 1))
    matches = sum((left_bigrams & right_bigrams).values())
    total = (len(left) - 1) + (len(right) - 1)
    return (2 * matches) / total


def normalize_for_comparison(text: str) -> str:
    """Lowercase, drop markdown emphasis and punctuation, squeeze spaces."""
    normalized = _EMPHASIS_RE.sub(r"\1", text.lower())
    normalized = _NON_WORD_RE.sub(" ", normalized)
    return _WHITESPACE_RE.sub(" ", normalized).strip()


def word_jaccard_similarity(first: str, second: str) -> float:
    """Return the Jaccard index of the word sets of two texts."""
    left = normalize_for_comparison(first)
    right = normalize_for_comparison(second)
    if left == right:
        return 1.0
    if not left or not right:
        return 0.0
    left_words = set(left.split(" "))
    right_words = set(right.split(" "))
    intersection = len(left_words & right_words)
    union = len(left_words) + len(right_words) - intersection
    return intersection / union if union else 0.0


def content_hash(content: str) -> str:
    """Return a short stable hash of normalized content."""
    digest = hashlib.sha256(content.lower().strip().encode("utf-8"))
    return digest.hexdigest()[:16]


def remove_duplicate_response(content: str) -> str:
    """Cut a response that repeats itself after a stop-token failure.

    Looks for a later occurrence of the opening anchor; if the text from there
    is a prefix of (or is prefixed by, or is at least 80% similar to) what came
    before, only the first copy is kept.
    """
    length = len(content)
    if length < MIN_LENGTH_FOR_DUPLICATION_CHECK:
        return content

    anchor_length = min(ANCHOR_LENGTH, length // 3)
    anchor = content[:anchor_length]
    candidate = content.find(anchor, anchor_length)

    while candidate != -1:
        first_raw = content[:candidate]
        first = first_raw.strip()
        second = content[candidate:].strip()
        if not second:
            break

        first_lower = first.lower()
        second_lower = second.lower()
        similarity = 0.0
        if first_lower.startswith(second_lower) or second_lower.startswith(first_lower):
            similarity = 1.0
        else:
            ratio = len(first) / len(second)
            if _MIN_LENGTH_RATIO < ratio < _MAX_LENGTH_RATIO:
                similarity = string_similarity(first, second)

        if similarity >= INTRA_TURN_SIMILARITY_THRESHOLD:
            logger.warning(
                "Removed repeated response content (split at %s of %s chars, "
                "similarity %.3f)",
                candidate,
                length,
                similarity,
            )
            return first_raw.rstrip()

        candidate = content.find(anchor, candidate + 1)

    return content


@dataclass(frozen=True, slots=True)
class DuplicateCheck:
    """Result of comparing a response against recent assistant turns."""

    is_duplicate: bool
    match_index: int = -1
    method: str | None = None
    similarity: float = 0.0


def find_recent_duplicate(
    response: str,
    recent_responses: Sequence[str],
    threshold: float = CROSS_TURN_SIMILARITY_THRESHOLD,
) -> DuplicateCheck:
    """Check `response` against recent assistant turns, newest first.

    Layers, in order: exact normalized hash, word Jaccard, bigram Dice.
    """
    cleaned = response.strip()
    if len(cleaned) < MIN_LENGTH_FOR_SIMILARITY_CHECK:
        return DuplicateCheck(is_duplicate=False)

    response_hash = content_hash(cleaned)
    best = 0.0
    for index, previous in enumerate(recent_responses):
        previous_clean = previous.strip()
        if len(previous_clean) < MIN_LENGTH_FOR_SIMILARITY_CHECK:
            continue
        if content_hash(previous_clean) == response_hash:
            return DuplicateCheck(True, index, "exact_hash", 1.0)
        jaccard = word_jaccard_similarity(cleaned, previous_clean)
        if jaccard >= WORD_JACCARD_THRESHOLD:
            return DuplicateCheck(True, index, "word_jaccard", jaccard)
        similarity = string_similarity(cleaned, previous_clean)
        best = max(best, similarity)
        if similarity >= threshold:
            return DuplicateCheck(True, index, "bigram", similarity)

    if NEAR_MISS_THRESHOLD <= best < threshold:
        logger.info(
            "Near-miss cross-turn similarity %.3f (threshold %.2f)",
            best,
            threshold,
        )
    return DuplicateCheck(is_duplicate=False, similarity=best)


def post_process_response(
    raw_content: str,
    *,
    personality_name: str,
    user_name: str,
    api_reasoning: str | None = None,
) -> PostProcessResult:
    """Run thinking extraction, artifact stripping, dedupe and placeholders."""
    extraction = extract_thinking_blocks(raw_content)
    thinking = merge_thinking_content(api_reasoning, extraction.thinking_content)

    stripped = strip_response_artifacts(extraction.visible_content, personality_name)
    deduplicated = remove_duplicate_response(stripped)
    final = replace_placeholders(
        deduplicated,
        user_name=user_name,
        assistant_name=personality_name,
    ).strip()

    return PostProcessResult(
        content=final,
        thinking_content=thinking,
        artifacts_stripped=stripped != extraction.visible_content,
        duplicate_removed=deduplicated != stripped,
        raw_length=len(raw_content),
    )
