"""Versioned job payload and result schemas.

Each model here is both the validator for the queue wire format and the static
type used by the pipeline. Wire field names are camelCase; Python attributes
are snake_case. Either spelling is accepted on input, and
``model_dump(by_alias=True, mode="json")`` produces the wire form.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from personacord.core.config import DEFAULT_CONTEXT_WINDOW_TOKENS
from personacord.core.exceptions import JobValidationError

SCHEMA_VERSION = 1


class JobType(StrEnum):
    """Kinds of queued work."""

    AUDIO_TRANSCRIPTION = "audio-transcription"
    IMAGE_DESCRIPTION = "image-description"
    LLM_GENERATION = "llm-generation"


class JobStatus(StrEnum):
    """Lifecycle status reported for a queued job."""

    QUEUED = "queued"
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

MessageRole = Literal["user", "assistant", "system"]
ReasoningEffort = Literal["low", "medium", "high"]


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UtcDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]


class WireModel(BaseModel):
    """Base for immutable camelCase wire models."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the JSON-compatible wire mapping."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# =============================================================================
# Response destinations
# =============================================================================


class DiscordDestination(WireModel):
    type: Literal["discord"] = "discord"
    channel_id: str
    webhook_url: str | None = None
    interaction_id: str | None = None


class WebhookDestination(WireModel):
    type: Literal["webhook"] = "webhook"
    webhook_url: str
    channel_id: str | None = None


class ApiDestination(WireModel):
    type: Literal["api"] = "api"
    callback_url: str | None = None


ResponseDestination = Annotated[
    DiscordDestination | WebhookDestination | ApiDestination,
    Field(discriminator="type"),
]


# =============================================================================
# Request context
# =============================================================================


class AttachmentMetadata(WireModel):
    url: str
    content_type: str
    name: str | None = None
    size: int | None = None
    is_voice_message: bool = False
    duration: float | None = None
    original_url: str | None = None


class ConversationMessage(WireModel):
    role: MessageRole
    content: str
    id: str | None = None
    token_count: int | None = Field(default=None, ge=0)
    created_at: UtcDatetime | None = None
    persona_name: str | None = None
    discord_user_id: str | None = None


class ReferencedMessage(WireModel):
    reference_number: int = Field(ge=1)
    discord_message_id: str
    discord_user_id: str | None = None
    author_username: str = ""
    author_display_name: str = ""
    content: str = ""
    embeds: str = ""
    timestamp: UtcDatetime | None = None
    location_context: str = ""
    attachments: list[AttachmentMetadata] = Field(default_factory=list)


class GuildInfo(WireModel):
    id: str
    name: str


class ChannelInfo(WireModel):
    id: str
    name: str
    type: str = "GUILD_TEXT"


class ThreadInfo(WireModel):
    id: str
    name: str
    parent_channel: ChannelInfo | None = None


class DiscordEnvironment(WireModel):
    type: Literal["dm", "guild"] = "dm"
    guild: GuildInfo | None = None
    channel: ChannelInfo | None = None
    thread: ThreadInfo | None = None


class GuildMemberInfo(WireModel):
    roles: list[str] = Field(default_factory=list)
    display_color: str | None = None
    joined_at: str | None = None


class MentionedPersona(WireModel):
    persona_id: str
    persona_name: str


class ReferencedChannel(WireModel):
    channel_id: str
    channel_name: str | None = None


class RequestContext(WireModel):
    """Everything known about the conversational situation of one request."""

    user_id: str
    user_internal_id: str | None = None
    user_name: str | None = None
    discord_username: str | None = None
    channel_id: str | None = None
    server_id: str | None = None
    session_id: str | None = None
    is_proxy_message: bool = False
    active_persona_id: str | None = None
    active_persona_name: str | None = None
    user_timezone: str | None = None
    conversation_history: list[ConversationMessage] = Field(default_factory=list)
    attachments: list[AttachmentMetadata] = Field(default_factory=list)
    environment: DiscordEnvironment | None = None
    referenced_messages: list[ReferencedMessage] = Field(default_factory=list)
    mentioned_personas: list[MentionedPersona] = Field(default_factory=list)
    referenced_channels: list[ReferencedChannel] = Field(default_factory=list)
    active_persona_guild_info: GuildMemberInfo | None = None
    participant_guild_info: dict[str, GuildMemberInfo] | None = None
    focus_mode_enabled: bool = False
    incognito_mode_active: bool = False
    cross_channel_history: bool = False

    @field_validator("conversation_history")
    @classmethod
    def _order_history(
        cls,
        history: list[ConversationMessage],
    ) -> list[ConversationMessage]:
        # Only reorder when every entry is timestamped; sorted() is stable.
        if history and all(message.created_at is not None for message in history):
            return sorted(history, key=lambda message: message.created_at)  # type: ignore[arg-type, return-value]
        return history

    @field_validator("referenced_messages")
    @classmethod
    def _check_reference_numbers(
        cls,
        references: list[ReferencedMessage],
    ) -> list[ReferencedMessage]:
        numbers = [reference.reference_number for reference in references]
        if len(set(numbers)) != len(numbers):
            message = "Referenced message numbers must be unique"
            raise ValueError(message)
        return sorted(references, key=lambda reference: reference.reference_number)

    def oldest_history_timestamp(self) -> datetime | None:
        """Return the timestamp of the oldest timestamped history message."""
        timestamps = [
            message.created_at
            for message in self.conversation_history
            if message.created_at is not None
        ]
        return min(timestamps) if timestamps else None

    def reference_by_number(self, reference_number: int) -> ReferencedMessage | None:
        """Return the referenced message carrying `reference_number`."""
        for reference in self.referenced_messages:
            if reference.reference_number == reference_number:
                return reference
        return None


class MinimalJobContext(WireModel):
    user_id: str
    channel_id: str | None = None
    server_id: str | None = None


# =============================================================================
# Personality
# =============================================================================


class LoadedPersonality(WireModel):
    """Fully resolved, read-only configuration of one personality."""

    id: str
    name: str
    model: str
    display_name: str | None = None
    slug: str = ""
    system_prompt: str = ""
    vision_model: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)
    context_window_tokens: int = Field(default=DEFAULT_CONTEXT_WINDOW_TOKENS, gt=0)
    top_p: float | None = Field(default=None, ge=0, le=1)
    top_k: int | None = Field(default=None, ge=0)
    frequency_penalty: float | None = Field(default=None, ge=-2, le=2)
    presence_penalty: float | None = Field(default=None, ge=-2, le=2)
    repetition_penalty: float | None = Field(default=None, gt=0)
    reasoning_effort: ReasoningEffort | None = None
    memory_score_threshold: float | None = Field(default=None, ge=0, le=1)
    memory_limit: int | None = Field(default=None, ge=0)
    extended_context_max_messages: int | None = Field(default=None, gt=0)
    extended_context_max_age: int | None = Field(default=None, gt=0)
    character_info: str = ""
    personality_traits: str = ""
    personality_tone: str | None = None
    personality_age: str | None = None
    personality_appearance: str | None = None
    personality_likes: str | None = None
    personality_dislikes: str | None = None
    conversational_goals: str | None = None
    conversational_examples: str | None = None
    error_message: str | None = None
    show_thinking: bool = False
    provider: str | None = None
    config_source: str = "personality"

    @property
    def label(self) -> str:
        """Return the name shown to users."""
        return self.display_name or self.name


# =============================================================================
# Job payloads
# =============================================================================


class JobDependency(WireModel):
    job_id: str
    type: JobType
    status: JobStatus = JobStatus.QUEUED
    result_key: str | None = None
    source_reference_number: int | None = Field(default=None, ge=1)

    @property
    def storage_key(self) -> str:
        """Return the key under which this dependency's result is stored."""
        return self.result_key or self.job_id


class StructuredMessage(WireModel):
    content: str = ""
    attachments: list[AttachmentMetadata] = Field(default_factory=list)
    referenced_message: ReferencedMessage | None = None


MessageContent = str | StructuredMessage


class AudioTranscriptionJobData(WireModel):
    request_id: str
    job_type: Literal["audio-transcription"] = "audio-transcription"
    response_destination: ResponseDestination
    attachment: AttachmentMetadata
    context: MinimalJobContext
    source_reference_number: int | None = Field(default=None, ge=1)
    version: int = SCHEMA_VERSION


class ImageDescriptionJobData(WireModel):
    request_id: str
    job_type: Literal["image-description"] = "image-description"
    response_destination: ResponseDestination
    attachments: list[AttachmentMetadata]
    personality: LoadedPersonality
    context: MinimalJobContext
    source_reference_number: int | None = Field(default=None, ge=1)
    version: int = SCHEMA_VERSION

    @field_validator("attachments")
    @classmethod
    def _require_attachments(
        cls,
        attachments: list[AttachmentMetadata],
    ) -> list[AttachmentMetadata]:
        if not attachments:
            message = "At least one attachment is required"
            raise ValueError(message)
        return attachments


class LLMGenerationJobData(WireModel):
    request_id: str
    job_type: Literal["llm-generation"] = "llm-generation"
    response_destination: ResponseDestination
    personality: LoadedPersonality
    message: MessageContent
    context: RequestContext
    dependencies: list[JobDependency] = Field(default_factory=list)
    version: int = SCHEMA_VERSION

    @property
    def message_text(self) -> str:
        """Return the plain text of the triggering message."""
        if isinstance(self.message, str):
            return self.message
        return self.message.content


AnyJobData = Annotated[
    AudioTranscriptionJobData | ImageDescriptionJobData | LLMGenerationJobData,
    Field(discriminator="job_type"),
]

_ANY_JOB_ADAPTER: TypeAdapter[
    AudioTranscriptionJobData | ImageDescriptionJobData | LLMGenerationJobData
] = TypeAdapter(AnyJobData)


def _format_issues(error: ValidationError) -> list[str]:
    issues: list[str] = []
    for issue in error.errors():
        location = ".".join(str(part) for part in issue.get("loc", ()))
        issues.append(f"{location}: {issue.get('msg', 'invalid')}")
    return issues


def parse_job_data(
    raw: object,
) -> AudioTranscriptionJobData | ImageDescriptionJobData | LLMGenerationJobData:
    """Validate a raw job payload into the job class chosen by `jobType`.

    Raises:
        JobValidationError: If the payload does not match any job schema.

    """
    try:
        return _ANY_JOB_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        issues = _format_issues(exc)
        message = f"Invalid job payload: {'; '.join(issues)}"
        raise JobValidationError(message, issues=issues) from exc


# =============================================================================
# Results
# =============================================================================


class AudioTranscriptionMetadata(WireModel):
    processing_time_ms: int | None = None
    duration: float | None = None


class AudioTranscriptionResult(WireModel):
    request_id: str
    success: bool
    content: str | None = None
    error: str | None = None
    attachment_url: str | None = None
    attachment_name: str | None = None
    source_reference_number: int | None = Field(default=None, ge=1)
    metadata: AudioTranscriptionMetadata | None = None
    completed_at: UtcDatetime | None = None
    version: int = SCHEMA_VERSION


class ImageDescription(WireModel):
    url: str
    description: str


class ImageDescriptionMetadata(WireModel):
    processing_time_ms: int | None = None


class ImageDescriptionResult(WireModel):
    request_id: str
    success: bool
    descriptions: list[ImageDescription] = Field(default_factory=list)
    failed_count: int = Field(default=0, ge=0)
    error: str | None = None
    source_reference_number: int | None = Field(default=None, ge=1)
    metadata: ImageDescriptionMetadata | None = None
    completed_at: UtcDatetime | None = None
    version: int = SCHEMA_VERSION


ErrorType = Literal["transient", "permanent", "unknown"]


class ErrorInfo(WireModel):
    type: ErrorType
    category: str
    should_retry: bool
    user_message: str
    reference_id: str
    status_code: int | None = None
    technical_message: str | None = None


class GenerationMetadata(WireModel):
    retrieved_memories: int = 0
    tokens_in: int | None = None
    tokens_out: int | None = None
    processing_time_ms: int | None = None
    model_used: str | None = None
    provider_used: str | None = None
    config_source: str | None = None
    focus_mode_enabled: bool = False
    incognito_mode_active: bool = False
    cross_turn_duplicate_detected: bool = False
    thinking_content: str | None = None
    show_thinking: bool = False
    history_messages_dropped: int = 0
    memories_dropped: int = 0
    failed_step: str | None = None
    last_successful_step: str | None = None


class LLMGenerationResult(WireModel):
    """Outcome of one generation request (the generation payload)."""

    request_id: str
    success: bool
    content: str | None = None
    error: str | None = None
    error_info: ErrorInfo | None = None
    personality_error_message: str | None = None
    metadata: GenerationMetadata = Field(default_factory=GenerationMetadata)
    version: int = SCHEMA_VERSION


GenerationPayload = LLMGenerationResult

PreprocessingResult = AudioTranscriptionResult | ImageDescriptionResult
JobResult = AudioTranscriptionResult | ImageDescriptionResult | LLMGenerationResult
