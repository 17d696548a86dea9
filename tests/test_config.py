from __future__ import annotations

import os
import pathlib

import pytest

from personacord.core.config import (
    ConfigFileEmptyError,
    ensure_list,
    get_config,
    load_config_or_default,
    manager,
)
from personacord.core.config.constants import (
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_WORKER_CONCURRENCY,
)
from personacord.core.config.settings import (
    context_max_age_seconds,
    embedding_model,
    get_float_setting,
    get_int_setting,
    provider_api_keys,
    worker_concurrency,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (8, 8),
        ("12", 12),
        (True, 4),
        ("many", 4),
        (0, 4),
        (None, 4),
    ],
)
def test_int_setting_falls_back_on_bad_values(raw: object, expected: int) -> None:
    assert get_int_setting({"workers": raw}, "workers", 4) == expected


def test_float_setting_requires_a_positive_value() -> None:
    assert get_float_setting({"ttl": "2.5"}, "ttl", 1.0) == 2.5
    assert get_float_setting({"ttl": 0}, "ttl", 1.0) == 1.0
    assert get_float_setting({"ttl": False}, "ttl", 1.0) == 1.0
    assert get_float_setting({}, "ttl", 1.0) == 1.0


def test_named_settings_use_defaults() -> None:
    assert worker_concurrency({}) == DEFAULT_WORKER_CONCURRENCY
    assert worker_concurrency({"worker_concurrency": 2}) == 2
    assert embedding_model({"embedding_model": "  "}) == DEFAULT_EMBEDDING_MODEL
    assert embedding_model({"embedding_model": " text-embedding-3-large "}) == (
        "text-embedding-3-large"
    )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, None),
        (3600, 3600.0),
        ("90", 90.0),
        (0, None),
        (True, None),
        ("soon", None),
    ],
)
def test_context_age_limit_is_optional(raw: object, expected: float | None) -> None:
    assert context_max_age_seconds({"context_max_age_seconds": raw}) == expected


def test_provider_api_keys_accept_string_or_list() -> None:
    config = {
        "providers": {
            "openai": {"api_key": "sk-one"},
            "openrouter": {"api_key": ["or-1", "or-2"]},
            "broken": "not-a-mapping",
        },
    }

    assert provider_api_keys(config, "openai") == ["sk-one"]
    assert provider_api_keys(config, "openrouter") == ["or-1", "or-2"]
    assert provider_api_keys(config, "broken") == []
    assert provider_api_keys(config, "anthropic") == []
    assert provider_api_keys({}, "openai") == []
    assert ensure_list(None) == []


def test_get_config_reads_yaml(
    tmp_path: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    (tmp_path / "config.yaml").write_text(
        "worker_concurrency: 6\nproviders:\n  openai:\n    api_key: sk-file\n",
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    config = get_config()

    assert worker_concurrency(config) == 6
    assert provider_api_keys(config, "openai") == ["sk-file"]


def test_empty_config_file_is_an_error(
    tmp_path: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    (tmp_path / "config.yaml").write_text("", encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    with pytest.raises(ConfigFileEmptyError):
        get_config()


def test_missing_config_file_yields_defaults(
    tmp_path: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.chdir(tmp_path)

    assert load_config_or_default("missing.yaml") == {}


def test_non_mapping_config_is_an_error(
    tmp_path: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    (tmp_path / "config.yaml").write_text("- just\n- a list\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    with pytest.raises(ConfigFileEmptyError, match="config.yaml"):
        get_config()


def test_config_reloads_after_the_file_changes(
    tmp_path: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("worker_concurrency: 2\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(manager, "CONFIG_CACHE_TTL", -1)

    first = get_config()
    assert get_config() is first

    path.write_text("worker_concurrency: 9\n", encoding="utf-8")
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 10))

    assert worker_concurrency(get_config()) == 9


def test_each_filename_has_its_own_cache(
    tmp_path: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    (tmp_path / "config.yaml").write_text("worker_concurrency: 3\n", encoding="utf-8")
    (tmp_path / "other.yaml").write_text("worker_concurrency: 7\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    assert worker_concurrency(get_config()) == 3
    assert worker_concurrency(get_config("other.yaml")) == 7
