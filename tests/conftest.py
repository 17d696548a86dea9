from __future__ import annotations

from collections.abc import Callable

import pytest

from personacord.core.config import clear_config_cache


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _fresh_config_cache() -> None:
    clear_config_cache()


@pytest.fixture
def word_counter() -> Callable[[str], int]:
    """Count one token per whitespace-separated word."""

    def _count(text: str) -> int:
        return len(text.split())

    return _count
