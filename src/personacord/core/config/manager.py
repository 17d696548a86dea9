"""Loading and caching of ``config.yaml``.

The file is looked up in the working directory, then in ``/etc/secrets``.
Each filename has its own cache entry, re-read only when the file's mtime
changes; the mtime itself is checked at most every ``CONFIG_CACHE_TTL``
seconds.
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

CONFIG_SEARCH_DIRS = (Path(), Path("/etc/secrets"))
CONFIG_CACHE_TTL = 5


class ConfigFileNotFoundError(FileNotFoundError):
    """Raised when no search directory holds the configuration file."""

    def __init__(self, filename: str) -> None:
        """Initialize the error with the missing filename."""
        self.filename = filename
        super().__init__(filename)

    def __str__(self) -> str:
        """Return a readable error message."""
        searched = ", ".join(str(directory.resolve()) for directory in CONFIG_SEARCH_DIRS)
        return f"Config file '{self.filename}' not found in: {searched}"


class ConfigFileEmptyError(ValueError):
    """Raised when a configuration file is empty or not a mapping."""

    def __init__(self, path: Path) -> None:
        """Initialize the error with the invalid config path."""
        self.path = path
        super().__init__(path)

    def __str__(self) -> str:
        """Return a readable error message."""
        return f"Config file is empty or corrupted: {self.path}"


@dataclass(slots=True)
class _CachedConfig:
    path: Path
    mtime: float
    checked_at: float
    data: dict[str, Any] = field(default_factory=dict)


_CACHE: dict[str, _CachedConfig] = {}


def _find_config(filename: str) -> Path:
    for directory in CONFIG_SEARCH_DIRS:
        candidate = directory / filename
        if candidate.exists():
            return candidate
    raise ConfigFileNotFoundError(filename)


def _read_config(path: Path) -> dict[str, Any]:
    with path.open(encoding="utf-8") as file:
        loaded = yaml.safe_load(file)
    if not isinstance(loaded, dict):
        raise ConfigFileEmptyError(path)
    return loaded


def get_config(filename: str = "config.yaml") -> dict[str, Any]:
    """Return the parsed config mapping, reloading it after the file changes.

    Raises:
        ConfigFileNotFoundError: If the file is in no search directory.
        ConfigFileEmptyError: If the file is empty or its top level is not a
            mapping.

    """
    now = time.monotonic()
    cached = _CACHE.get(filename)
    if cached is not None and now - cached.checked_at <= CONFIG_CACHE_TTL:
        return cached.data

    path = _find_config(filename)
    mtime = path.stat().st_mtime
    if cached is not None and cached.path == path and cached.mtime == mtime:
        cached.checked_at = now
        return cached.data

    _CACHE[filename] = _CachedConfig(
        path=path,
        mtime=mtime,
        checked_at=now,
        data=_read_config(path),
    )
    return _CACHE[filename].data


def load_config_or_default(filename: str = "config.yaml") -> dict[str, Any]:
    """Return the config mapping, or an empty mapping when no file exists."""
    try:
        return get_config(filename)
    except ConfigFileNotFoundError:
        return {}


def clear_config_cache() -> None:
    """Forget every cached config so the next `get_config()` re-reads the file."""
    _CACHE.clear()


def ensure_list(value: str | list[str] | None) -> list[str]:
    """Return `value` as a list; a single key becomes a one-element list.

    Examples:
        >>> ensure_list("key123")
        ['key123']
        >>> ensure_list(None)
        []

    """
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)
