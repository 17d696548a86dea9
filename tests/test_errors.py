from __future__ import annotations

import asyncio
import re

import httpx
import litellm
import pytest

from personacord.core.exceptions import (
    DependencyTimeoutError,
    EmptyResponseError,
    MediaNotFoundError,
)
from personacord.services import errors as errors_mod
from personacord.services.errors import (
    ApiErrorCategory,
    ApiErrorType,
    build_user_error_message,
    classify_http_status,
    format_error_spoiler,
    format_personality_error_message,
    generate_error_reference_id,
    parse_api_error,
    to_error_info,
)


class _StatusError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


@pytest.mark.parametrize(
    ("status", "expected_type", "expected_category"),
    [
        (400, ApiErrorType.PERMANENT, ApiErrorCategory.BAD_REQUEST),
        (401, ApiErrorType.PERMANENT, ApiErrorCategory.AUTHENTICATION),
        (402, ApiErrorType.PERMANENT, ApiErrorCategory.QUOTA_EXCEEDED),
        (403, ApiErrorType.PERMANENT, ApiErrorCategory.CONTENT_POLICY),
        (404, ApiErrorType.PERMANENT, ApiErrorCategory.MODEL_NOT_FOUND),
        (408, ApiErrorType.TRANSIENT, ApiErrorCategory.TIMEOUT),
        (429, ApiErrorType.TRANSIENT, ApiErrorCategory.RATE_LIMIT),
        (503, ApiErrorType.TRANSIENT, ApiErrorCategory.SERVER_ERROR),
        (418, ApiErrorType.UNKNOWN, ApiErrorCategory.UNKNOWN),
        (None, ApiErrorType.UNKNOWN, ApiErrorCategory.UNKNOWN),
    ],
)
def test_classify_http_status(
    status: int | None,
    expected_type: ApiErrorType,
    expected_category: ApiErrorCategory,
) -> None:
    assert classify_http_status(status) == (expected_type, expected_category)


def test_parse_api_error_reads_status_code_attribute() -> None:
    parsed = parse_api_error(_StatusError("Unauthorized", 401))

    assert parsed.status_code == 401
    assert parsed.category is ApiErrorCategory.AUTHENTICATION
    assert parsed.should_retry is False


def test_parse_api_error_reads_status_from_cause() -> None:
    try:
        try:
            raise _StatusError("upstream", 429)
        except _StatusError as inner:
            msg = "wrapped provider failure"
            raise RuntimeError(msg) from inner
    except RuntimeError as exc:
        parsed = parse_api_error(exc)

    assert parsed.status_code == 429
    assert parsed.category is ApiErrorCategory.RATE_LIMIT
    assert parsed.should_retry is True


@pytest.mark.parametrize(
    ("message", "expected_category"),
    [
        ("Request failed with status code 429", ApiErrorCategory.RATE_LIMIT),
        ("upstream status: 500", ApiErrorCategory.SERVER_ERROR),
        ("status=403 forbidden", ApiErrorCategory.CONTENT_POLICY),
        ("You exceeded your current quota", ApiErrorCategory.QUOTA_EXCEEDED),
        ("Too Many Requests", ApiErrorCategory.RATE_LIMIT),
        ("Invalid API key provided", ApiErrorCategory.AUTHENTICATION),
        ("read ECONNRESET", ApiErrorCategory.NETWORK),
        ("The operation timed out", ApiErrorCategory.TIMEOUT),
    ],
)
def test_parse_api_error_classifies_messages(
    message: str,
    expected_category: ApiErrorCategory,
) -> None:
    assert parse_api_error(RuntimeError(message)).category is expected_category


def test_quota_errors_are_permanent() -> None:
    parsed = parse_api_error("Daily limit reached: 50 requests per day")

    assert parsed.type is ApiErrorType.PERMANENT
    assert parsed.should_retry is False


def test_timeouts_are_transient() -> None:
    for error in (
        asyncio.TimeoutError(),
        httpx.ReadTimeout("slow"),
        litellm.Timeout(message="slow", model="m", llm_provider="openai"),
    ):
        parsed = parse_api_error(error)
        assert parsed.category is ApiErrorCategory.TIMEOUT
        assert parsed.should_retry is True


def test_network_errors_are_transient() -> None:
    parsed = parse_api_error(httpx.ConnectError("connection refused"))

    assert parsed.type is ApiErrorType.TRANSIENT
    assert parsed.category is ApiErrorCategory.NETWORK


def test_unknown_errors_are_not_retried() -> None:
    parsed = parse_api_error(ValueError("something odd"))

    assert parsed.type is ApiErrorType.UNKNOWN
    assert parsed.should_retry is False
    assert parsed.user_message == errors_mod.USER_ERROR_MESSAGES[ApiErrorCategory.UNKNOWN]


def test_pipeline_exceptions_have_fixed_classifications() -> None:
    timeout = parse_api_error(DependencyTimeoutError("req-1", 121.0))
    empty = parse_api_error(EmptyResponseError("LLM returned no usable content"))
    missing = parse_api_error(MediaNotFoundError("https://cdn.example.com/x.ogg"))

    assert (timeout.type, timeout.category) == (
        ApiErrorType.PERMANENT,
        ApiErrorCategory.TIMEOUT,
    )
    assert (empty.type, empty.category) == (
        ApiErrorType.TRANSIENT,
        ApiErrorCategory.EMPTY_RESPONSE,
    )
    assert missing.category is ApiErrorCategory.MEDIA_NOT_FOUND


def test_reference_ids_are_lowercase_base36_and_unique() -> None:
    ids = {generate_error_reference_id() for _ in range(50)}

    assert len(ids) == 50
    assert all(re.fullmatch(r"[0-9a-z]+", reference_id) for reference_id in ids)


def test_error_spoiler_format() -> None:
    assert (
        format_error_spoiler(ApiErrorCategory.QUOTA_EXCEEDED, "abc123")
        == "||*(error: quota exceeded; reference: abc123)*||"
    )
    assert format_personality_error_message(
        "Oops, my brain froze.",
        "rate_limit",
        "xyz",
    ) == ("Oops, my brain froze. ||*(error: rate limit; reference: xyz)*||")


def test_user_error_message_prefers_personality_message() -> None:
    parsed = parse_api_error(_StatusError("Payment Required", 402))

    custom = build_user_error_message("I can't talk right now.", parsed)
    default = build_user_error_message(None, parsed)

    assert custom.startswith("I can't talk right now. ||*(error: quota exceeded;")
    assert parsed.reference_id in custom
    assert default == parsed.user_message


def test_to_error_info_carries_classification() -> None:
    parsed = parse_api_error(_StatusError("Service Unavailable", 503))

    info = to_error_info(parsed, should_retry=False)

    assert info.type == "transient"
    assert info.category == "server_error"
    assert info.should_retry is False
    assert info.status_code == 503
    assert info.reference_id == parsed.reference_id
