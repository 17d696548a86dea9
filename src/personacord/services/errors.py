"""LLM provider error parsing and classification.

Provider failures reach the pipeline in many shapes: LiteLLM exceptions with a
``status_code``, httpx errors carrying a response, wrapped exceptions whose
cause holds the status, or bare messages such as ``"status code 429"``. This
module normalizes all of them into one taxonomy:

- a type (transient, permanent, unknown) that decides retry eligibility
- a category that selects the user-facing message
- a short reference id that links the user message to the logs
"""

from __future__ import annotations

import asyncio
import re
import secrets
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx
from litellm.exceptions import (
    APIConnectionError,
    ContentPolicyViolationError,
    ContextWindowExceededError,
    Timeout,
)

from personacord.core.exceptions import (
    DependencyTimeoutError,
    EmptyResponseError,
    MediaNotFoundError,
)
from personacord.jobs.schemas import ErrorInfo


class ApiErrorType(StrEnum):
    """Retry disposition of a classified error."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class ApiErrorCategory(StrEnum):
    """What went wrong, at the granularity shown to users."""

    AUTHENTICATION = "authentication"
    QUOTA_EXCEEDED = "quota_exceeded"
    CONTENT_POLICY = "content_policy"
    BAD_REQUEST = "bad_request"
    MODEL_NOT_FOUND = "model_not_found"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    NETWORK = "network"
    EMPTY_RESPONSE = "empty_response"
    CENSORED = "censored"
    MEDIA_NOT_FOUND = "media_not_found"
    UNKNOWN = "unknown"


HTTP_BAD_REQUEST = 400
HTTP_UNAUTHORIZED = 401
HTTP_PAYMENT_REQUIRED = 402
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_REQUEST_TIMEOUT = 408
HTTP_TOO_MANY_REQUESTS = 429
HTTP_INTERNAL_SERVER_ERROR = 500
HTTP_BAD_GATEWAY = 502
HTTP_SERVICE_UNAVAILABLE = 503
HTTP_GATEWAY_TIMEOUT = 504

_STATUS_CLASSIFICATION: dict[int, tuple[ApiErrorType, ApiErrorCategory]] = {
    HTTP_BAD_REQUEST: (ApiErrorType.PERMANENT, ApiErrorCategory.BAD_REQUEST),
    HTTP_UNAUTHORIZED: (ApiErrorType.PERMANENT, ApiErrorCategory.AUTHENTICATION),
    HTTP_PAYMENT_REQUIRED: (ApiErrorType.PERMANENT, ApiErrorCategory.QUOTA_EXCEEDED),
    HTTP_FORBIDDEN: (ApiErrorType.PERMANENT, ApiErrorCategory.CONTENT_POLICY),
    HTTP_NOT_FOUND: (ApiErrorType.PERMANENT, ApiErrorCategory.MODEL_NOT_FOUND),
    HTTP_REQUEST_TIMEOUT: (ApiErrorType.TRANSIENT, ApiErrorCategory.TIMEOUT),
    HTTP_TOO_MANY_REQUESTS: (ApiErrorType.TRANSIENT, ApiErrorCategory.RATE_LIMIT),
    HTTP_INTERNAL_SERVER_ERROR: (
        ApiErrorType.TRANSIENT,
        ApiErrorCategory.SERVER_ERROR,
    ),
    HTTP_BAD_GATEWAY: (ApiErrorType.TRANSIENT, ApiErrorCategory.SERVER_ERROR),
    HTTP_SERVICE_UNAVAILABLE: (ApiErrorType.TRANSIENT, ApiErrorCategory.SERVER_ERROR),
    HTTP_GATEWAY_TIMEOUT: (ApiErrorType.TRANSIENT, ApiErrorCategory.SERVER_ERROR),
}

USER_ERROR_MESSAGES: dict[ApiErrorCategory, str] = {
    ApiErrorCategory.AUTHENTICATION: (
        "There's a problem with the API key configuration. "
        "Please check your API key settings."
    ),
    ApiErrorCategory.QUOTA_EXCEEDED: (
        "The usage limit for this AI model has been reached. Please try again later."
    ),
    ApiErrorCategory.CONTENT_POLICY: (
        "The AI provider declined this request due to its content policy."
    ),
    ApiErrorCategory.BAD_REQUEST: (
        "The request couldn't be processed. "
        "The conversation may be too long or contain unsupported content."
    ),
    ApiErrorCategory.MODEL_NOT_FOUND: (
        "The configured AI model isn't available. Please check the model settings."
    ),
    ApiErrorCategory.RATE_LIMIT: (
        "Too many requests right now. Please wait a moment and try again."
    ),
    ApiErrorCategory.SERVER_ERROR: (
        "The AI service is having trouble right now. Please try again shortly."
    ),
    ApiErrorCategory.TIMEOUT: "The AI took too long to respond. Please try again.",
    ApiErrorCategory.NETWORK: (
        "Couldn't reach the AI service due to a network problem. Please try again."
    ),
    ApiErrorCategory.EMPTY_RESPONSE: (
        "The AI returned an empty response. Please try rephrasing your message."
    ),
    ApiErrorCategory.CENSORED: (
        "The AI declined to respond to this message. Please try rephrasing."
    ),
    ApiErrorCategory.MEDIA_NOT_FOUND: (
        "An attachment could not be downloaded. It may have expired."
    ),
    ApiErrorCategory.UNKNOWN: "Something went wrong while generating a response.",
}


_STATUS_IN_MESSAGE_RE = re.compile(
    r"\bstatus(?:[ _]code)?\s*[:=]?\s*(\d{3})\b",
    flags=re.IGNORECASE,
)

_MESSAGE_PATTERNS: tuple[tuple[re.Pattern[str], ApiErrorType, ApiErrorCategory], ...] = (
    (
        re.compile(r"quota|per day|daily limit|insufficient credits", re.IGNORECASE),
        ApiErrorType.PERMANENT,
        ApiErrorCategory.QUOTA_EXCEEDED,
    ),
    (
        re.compile(r"too many requests|rate[ _-]?limit", re.IGNORECASE),
        ApiErrorType.TRANSIENT,
        ApiErrorCategory.RATE_LIMIT,
    ),
    (
        re.compile(
            r"invalid api key|incorrect api key|unauthorized|authentication",
            re.IGNORECASE,
        ),
        ApiErrorType.PERMANENT,
        ApiErrorCategory.AUTHENTICATION,
    ),
    (
        re.compile(r"content policy|moderation|safety system|flagged", re.IGNORECASE),
        ApiErrorType.PERMANENT,
        ApiErrorCategory.CONTENT_POLICY,
    ),
    (
        re.compile(
            r"context (?:length|window)|maximum context|too many tokens",
            re.IGNORECASE,
        ),
        ApiErrorType.PERMANENT,
        ApiErrorCategory.BAD_REQUEST,
    ),
    (
        re.compile(r"model not found|no such model|does not exist", re.IGNORECASE),
        ApiErrorType.PERMANENT,
        ApiErrorCategory.MODEL_NOT_FOUND,
    ),
    (
        re.compile(
            r"econnreset|etimedout|econnrefused|enotfound|connection reset"
            r"|connection refused|name or service not known",
            re.IGNORECASE,
        ),
        ApiErrorType.TRANSIENT,
        ApiErrorCategory.NETWORK,
    ),
    (
        re.compile(r"timed out|timeout", re.IGNORECASE),
        ApiErrorType.TRANSIENT,
        ApiErrorCategory.TIMEOUT,
    ),
    (
        re.compile(
            r"internal server error|bad gateway|service unavailable|overloaded"
            r"|unexpected end of json|cannot read properties|is not a function",
            re.IGNORECASE,
        ),
        ApiErrorType.TRANSIENT,
        ApiErrorCategory.SERVER_ERROR,
    ),
    (
        re.compile(r"censored", re.IGNORECASE),
        ApiErrorType.TRANSIENT,
        ApiErrorCategory.CENSORED,
    ),
)


@dataclass(slots=True)
class ParsedApiError:
    """Normalized view of a provider failure."""

    type: ApiErrorType
    category: ApiErrorCategory
    status_code: int | None
    should_retry: bool
    user_message: str
    technical_message: str
    reference_id: str
    provider_request_id: str | None = None


def generate_error_reference_id() -> str:
    """Return a short, unique, lowercase base36 reference id."""
    value = (int(time.time() * 1000) << 20) | secrets.randbits(20)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    encoded = ""
    while value:
        value, remainder = divmod(value, 36)
        encoded = digits[remainder] + encoded
    return encoded or "0"


def classify_http_status(
    status_code: int | None,
) -> tuple[ApiErrorType, ApiErrorCategory]:
    """Map an HTTP status code to an error type and category."""
    if status_code is None:
        return ApiErrorType.UNKNOWN, ApiErrorCategory.UNKNOWN
    return _STATUS_CLASSIFICATION.get(
        status_code,
        (ApiErrorType.UNKNOWN, ApiErrorCategory.UNKNOWN),
    )


def is_retryable(error_type: ApiErrorType) -> bool:
    """Return True only for transient errors; unknown errors are not retried."""
    return error_type is ApiErrorType.TRANSIENT


def format_error_spoiler(category: ApiErrorCategory | str, reference_id: str) -> str:
    """Render the Discord spoiler footer appended to personality error messages."""
    label = str(category).replace("_", " ")
    return f"||*(error: {label}; reference: {reference_id})*||"


def format_personality_error_message(
    message: str,
    category: ApiErrorCategory | str,
    reference_id: str,
) -> str:
    """Append the error spoiler to a personality's custom error message."""
    return f"{message} {format_error_spoiler(category, reference_id)}"


def _coerce_status(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and 100 <= value <= 599:  # noqa: PLR2004
        return value
    return None


def _status_from_object(obj: object) -> int | None:
    for attribute in ("status_code", "status"):
        status = _coerce_status(getattr(obj, attribute, None))
        if status is not None:
            return status

    response = getattr(obj, "response", None)
    if response is not None:
        for attribute in ("status_code", "status"):
            status = _coerce_status(getattr(response, attribute, None))
            if status is not None:
                return status
    return None


def _get_exception_status_code(error: BaseException) -> int | None:
    status = _status_from_object(error)
    if status is not None:
        return status

    cause = error.__cause__ or getattr(error, "cause", None)
    if cause is not None and cause is not error:
        status = _status_from_object(cause)
        if status is not None:
            return status

    match = _STATUS_IN_MESSAGE_RE.search(str(error))
    if match:
        return _coerce_status(int(match.group(1)))
    return None


def _get_provider_request_id(error: BaseException) -> str | None:
    response = getattr(error, "response", None)
    headers: Any = getattr(response, "headers", None)
    if headers is None:
        return None
    try:
        request_id = headers.get("x-request-id")
    except AttributeError:
        return None
    return str(request_id) if request_id else None


def _classify_exception_type(
    error: BaseException,
) -> tuple[ApiErrorType, ApiErrorCategory] | None:
    # Order matters: litellm's content-policy and context-window errors are
    # BadRequestError subclasses, and APIConnectionError reports status 500.
    if isinstance(error, ContentPolicyViolationError):
        return ApiErrorType.PERMANENT, ApiErrorCategory.CONTENT_POLICY
    if isinstance(error, ContextWindowExceededError):
        return ApiErrorType.PERMANENT, ApiErrorCategory.BAD_REQUEST
    if isinstance(error, (Timeout, asyncio.TimeoutError, httpx.TimeoutException)):
        return ApiErrorType.TRANSIENT, ApiErrorCategory.TIMEOUT
    if isinstance(error, (APIConnectionError, httpx.NetworkError, ConnectionError)):
        return ApiErrorType.TRANSIENT, ApiErrorCategory.NETWORK
    if isinstance(error, DependencyTimeoutError):
        return ApiErrorType.PERMANENT, ApiErrorCategory.TIMEOUT
    if isinstance(error, MediaNotFoundError):
        return ApiErrorType.PERMANENT, ApiErrorCategory.MEDIA_NOT_FOUND
    if isinstance(error, EmptyResponseError):
        return ApiErrorType.TRANSIENT, ApiErrorCategory.EMPTY_RESPONSE
    return None


def _classify_message(message: str) -> tuple[ApiErrorType, ApiErrorCategory] | None:
    if "empty response" in message.lower() or "no usable content" in message.lower():
        return ApiErrorType.TRANSIENT, ApiErrorCategory.EMPTY_RESPONSE
    for pattern, error_type, category in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return error_type, category
    return None


def parse_api_error(error: object) -> ParsedApiError:
    """Classify any provider failure into the pipeline's error taxonomy.

    Args:
        error: An exception, a plain message string, or None.

    Returns:
        ParsedApiError with a fresh reference id and a user-safe message.

    """
    reference_id = generate_error_reference_id()

    if error is None:
        technical_message = "Unknown error"
        status_code = None
        classification = None
        provider_request_id = None
    elif isinstance(error, BaseException):
        technical_message = str(error) or type(error).__name__
        status_code = _get_exception_status_code(error)
        provider_request_id = _get_provider_request_id(error)
        classification = _classify_exception_type(error)
    else:
        technical_message = str(error)
        match = _STATUS_IN_MESSAGE_RE.search(technical_message)
        status_code = _coerce_status(int(match.group(1))) if match else None
        provider_request_id = None
        classification = None

    if classification is None and status_code is not None:
        by_status = classify_http_status(status_code)
        if by_status[1] is not ApiErrorCategory.UNKNOWN:
            classification = by_status

    if classification is None:
        classification = _classify_message(technical_message)

    if classification is None:
        classification = (ApiErrorType.UNKNOWN, ApiErrorCategory.UNKNOWN)

    error_type, category = classification
    return ParsedApiError(
        type=error_type,
        category=category,
        status_code=status_code,
        should_retry=is_retryable(error_type),
        user_message=USER_ERROR_MESSAGES[category],
        technical_message=technical_message,
        reference_id=reference_id,
        provider_request_id=provider_request_id,
    )


def to_error_info(
    parsed: ParsedApiError,
    *,
    should_retry: bool | None = None,
) -> ErrorInfo:
    """Convert a parsed error into the wire ``ErrorInfo``."""
    return ErrorInfo(
        type=parsed.type.value,
        category=parsed.category.value,
        should_retry=parsed.should_retry if should_retry is None else should_retry,
        user_message=parsed.user_message,
        reference_id=parsed.reference_id,
        status_code=parsed.status_code,
        technical_message=parsed.technical_message,
    )


def build_user_error_message(
    personality_error_message: str | None,
    parsed: ParsedApiError,
) -> str:
    """Return the text shown to the user for a failed generation.

    A personality's own error message wins and carries the spoiler footer;
    otherwise the category's default message is used.
    """
    if personality_error_message:
        return format_personality_error_message(
            personality_error_message,
            parsed.category,
            parsed.reference_id,
        )
    return parsed.user_message
