"""Token counting helpers."""

import logging
import math
from collections.abc import Callable, Iterable, Mapping

import tiktoken

from personacord.core.error_handling import log_exception

logger = logging.getLogger(__name__)

TokenCounter = Callable[[str], int]

# Characters per token when the encoding is unavailable; rounds up.
_FALLBACK_CHARS_PER_TOKEN = 3

# Loaded once at import time
_tiktoken_encoding: tiktoken.Encoding | None
try:
    _tiktoken_encoding = tiktoken.get_encoding("o200k_base")
except (KeyError, RuntimeError, ValueError, OSError) as exc:
    log_exception(
        logger=logger,
        message="Failed to load tiktoken encoding",
        error=exc,
        context={"encoding": "o200k_base"},
    )
    _tiktoken_encoding = None


def _get_tiktoken_encoding() -> tiktoken.Encoding | None:
    """Get the pre-loaded tiktoken encoding."""
    return _tiktoken_encoding


def estimate_tokens(text: str) -> int:
    """Estimate tokens without an encoding."""
    if not text:
        return 0
    return math.ceil(len(text) / _FALLBACK_CHARS_PER_TOKEN)


def count_text_tokens(text: str) -> int:
    """Count tokens in a text string using tiktoken."""
    if not text:
        return 0
    enc = _get_tiktoken_encoding()
    if enc is None:
        return estimate_tokens(text)
    try:
        return len(enc.encode(text, disallowed_special=()))
    except (AttributeError, RuntimeError, TypeError, ValueError):
        return estimate_tokens(text)


def _content_text_parts(content: object) -> Iterable[str]:
    if isinstance(content, str):
        yield content
        return
    if isinstance(content, list):
        for part in content:
            if isinstance(part, Mapping) and part.get("type") == "text":
                text = part.get("text")
                if isinstance(text, str):
                    yield text


def count_message_tokens(
    messages: Iterable[Mapping[str, object]],
    counter: TokenCounter = count_text_tokens,
) -> int:
    """Count tokens across the text content of chat messages."""
    total = 0
    for message in messages:
        for text in _content_text_parts(message.get("content", "")):
            total += counter(text)
    return total
