"""Render the ordered message list sent to the model.

The list returned by ``assemble_prompt`` is the exact object the generation
executor sends and the flight recorder stores. Nothing downstream rewrites it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from xml.sax.saxutils import escape, quoteattr
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from personacord.core.exceptions import PromptAssemblyError
from personacord.logic.budget import format_memory_line
from personacord.logic.tokens import TokenCounter, count_message_tokens, count_text_tokens

if TYPE_CHECKING:
    from collections.abc import Sequence

    from personacord.core.models import (
        MemoryEntry,
        PreprocessingResults,
        ProcessedAttachment,
    )
    from personacord.jobs.schemas import (
        ConversationMessage,
        DiscordEnvironment,
        LoadedPersonality,
        MessageContent,
        ReferencedMessage,
        RequestContext,
    )
    from personacord.logic.budget import BudgetAllocation

logger = logging.getLogger(__name__)

PromptMessage = dict[str, Any]

DEFAULT_USER_NAME = "User"
DM_LOCATION = '<location type="dm">Direct Message (private one-on-one chat)</location>'
MEMORY_ARCHIVE_OPEN = "<memory_archive>"
MEMORY_ARCHIVE_CLOSE = "</memory_archive>"

_CHARACTER_FIELDS: tuple[tuple[str, str], ...] = (
    ("character_info", "Character"),
    ("personality_traits", "Traits"),
    ("personality_tone", "Tone"),
    ("personality_age", "Age"),
    ("personality_appearance", "Appearance"),
    ("personality_likes", "Likes"),
    ("personality_dislikes", "Dislikes"),
    ("conversational_goals", "Conversational goals"),
    ("conversational_examples", "Example dialogue"),
)


@dataclass(frozen=True, slots=True)
class AssembledPrompt:
    """Final prompt plus the token estimate of exactly what is sent."""

    messages: list[PromptMessage]
    total_tokens: int
    system_prompt: str
    current_message: str
    history_count: int
    memory_count: int


@dataclass(frozen=True, slots=True)
class FixedPromptCosts:
    """Token costs that the budget can never drop."""

    system_prompt_tokens: int
    current_message_tokens: int


def replace_placeholders(text: str, *, user_name: str, assistant_name: str) -> str:
    """Replace ``{user}``/``{assistant}`` and ``{{user}}``/``{{char}}``."""
    if not text:
        return text
    replacements = (
        ("{{user}}", user_name),
        ("{{char}}", assistant_name),
        ("{user}", user_name),
        ("{assistant}", assistant_name),
    )
    for placeholder, value in replacements:
        text = text.replace(placeholder, value)
    return text


def speaker_name(context: RequestContext) -> str:
    """Return the name the current user is addressed by."""
    return (
        context.active_persona_name
        or context.user_name
        or context.discord_username
        or DEFAULT_USER_NAME
    )


def format_datetime(now: datetime, timezone_name: str | None) -> str:
    """Format `now` in the user's timezone, falling back to UTC."""
    zone: Any = UTC
    if timezone_name:
        try:
            zone = ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("Unknown timezone %r, using UTC", timezone_name)
    local = now.astimezone(zone)
    return local.strftime("%A, %B %d, %Y at %I:%M %p %Z")


def format_location(environment: DiscordEnvironment | None) -> str:
    """Render the conversation's location as XML."""
    if environment is None or environment.type == "dm":
        return DM_LOCATION
    attributes = ['type="guild"']
    if environment.guild is not None:
        attributes.append(f"server={quoteattr(environment.guild.name)}")
    if environment.channel is not None:
        attributes.append(f"channel={quoteattr('#' + environment.channel.name)}")
    if environment.thread is not None:
        attributes.append(f"thread={quoteattr(environment.thread.name)}")
    return f"<location {' '.join(attributes)}/>"


def _character_text(personality: LoadedPersonality, *, user_name: str) -> str:
    lines: list[str] = []
    for attribute, label in _CHARACTER_FIELDS:
        value = getattr(personality, attribute)
        if value:
            rendered = replace_placeholders(
                str(value),
                user_name=user_name,
                assistant_name=personality.name,
            )
            lines.append(f"{label}: {rendered}")
    return "\n".join(lines)


def _participant_lines(context: RequestContext, personality_name: str) -> list[str]:
    participants: dict[str, str | None] = {}
    for message in context.conversation_history:
        if message.role != "user" or not message.persona_name:
            continue
        if message.persona_name == personality_name:
            continue
        participants.setdefault(message.persona_name, message.discord_user_id)
    active_name = speaker_name(context)
    participants.pop(active_name, None)

    guild_info = context.participant_guild_info or {}
    lines: list[str] = []
    for name, discord_id in [(active_name, context.user_id), *participants.items()]:
        is_active = name == active_name
        attributes = f"name={quoteattr(name)}"
        if is_active:
            attributes += ' active="true"'
        info = context.active_persona_guild_info if is_active else None
        if info is None and discord_id:
            info = guild_info.get(f"discord:{discord_id}")
        if info is None:
            lines.append(f"<participant {attributes}/>")
            continue
        details: list[str] = []
        if info.roles:
            details.append(f"<roles>{escape(', '.join(info.roles))}</roles>")
        if info.display_color:
            details.append(f"<color>{escape(info.display_color)}</color>")
        if info.joined_at:
            details.append(f"<joined>{escape(info.joined_at)}</joined>")
        lines.append(
            f"<participant {attributes}>" + "".join(details) + "</participant>",
        )
    return lines


def format_memory_archive(memories: Sequence[MemoryEntry]) -> str:
    """Render admitted memories, or an empty string when there are none."""
    if not memories:
        return ""
    # Each line is charged by the budget as format_memory_line(...) + "\n"
    lines = "".join(f"{format_memory_line(memory)}\n" for memory in memories)
    return f"{MEMORY_ARCHIVE_OPEN}\n{lines}{MEMORY_ARCHIVE_CLOSE}"


def render_system_prompt(
    personality: LoadedPersonality,
    context: RequestContext,
    *,
    memories: Sequence[MemoryEntry] = (),
    now: datetime,
) -> str:
    """Render the system message from identity to protocol."""
    user_name = speaker_name(context)
    character = _character_text(personality, user_name=user_name)

    sections = [
        "<system_identity>\n"
        f"<role>You are {escape(personality.name)}.</role>\n"
        f"<character>\n{escape(character)}\n</character>\n"
        "</system_identity>",
        "<context>\n"
        f"<datetime>{escape(format_datetime(now, context.user_timezone))}</datetime>\n"
        f"{format_location(context.environment)}\n"
        "</context>",
    ]

    participant_lines = _participant_lines(context, personality.name)
    if participant_lines:
        sections.append(
            "<participants>\n" + "\n".join(participant_lines) + "\n</participants>",
        )

    archive = format_memory_archive(memories)
    if archive:
        sections.append(archive)

    protocol = replace_placeholders(
        personality.system_prompt,
        user_name=user_name,
        assistant_name=personality.name,
    ).strip()
    if protocol:
        sections.append(f"<protocol>\n{escape(protocol)}\n</protocol>")

    return "\n\n".join(sections)


def _attachment_line(attachment: ProcessedAttachment) -> str:
    label = "Audio transcript" if attachment.kind in {"audio", "voice"} else "Image"
    name = f" {attachment.name}" if attachment.name else ""
    return f"[{label}{name}]: {attachment.description}"


def _format_reference(
    reference: ReferencedMessage,
    attachments: Sequence[ProcessedAttachment],
) -> str:
    author = reference.author_display_name or reference.author_username or "Unknown"
    header = f"[Reference {reference.reference_number}] {author}"
    if reference.location_context:
        header += f" in {reference.location_context}"
    if reference.timestamp is not None:
        header += f" at {reference.timestamp.strftime('%Y-%m-%d %H:%M UTC')}"
    body = [header + ":"]
    if reference.content:
        body.append(reference.content)
    if reference.embeds:
        body.append(reference.embeds)
    body.extend(_attachment_line(attachment) for attachment in attachments)
    return "\n".join(body)


def render_current_message(
    message: MessageContent,
    context: RequestContext,
    preprocessing: PreprocessingResults | None = None,
) -> str:
    """Render the final user turn with attachments, references and speaker."""
    content = _current_message_body(message, context, preprocessing)
    persona_id = context.active_persona_id
    id_attribute = f" id={quoteattr(persona_id)}" if persona_id else ""
    return f"<from{id_attribute}>{escape(speaker_name(context))}</from>\n\n{content}"


def _current_message_body(
    message: MessageContent,
    context: RequestContext,
    preprocessing: PreprocessingResults | None,
) -> str:
    text = message if isinstance(message, str) else message.content
    parts = [text.strip()] if text.strip() else []

    if preprocessing is not None:
        parts.extend(
            _attachment_line(attachment)
            for attachment in preprocessing.processed_attachments
        )

    reference_attachments = (
        preprocessing.reference_attachments if preprocessing is not None else {}
    )
    if context.referenced_messages:
        references = "\n\n".join(
            _format_reference(
                reference,
                reference_attachments.get(reference.reference_number, []),
            )
            for reference in context.referenced_messages
        )
        parts.append(
            f"<contextual_references>\n{references}\n</contextual_references>",
        )

    return "\n\n".join(parts)


def _history_turn(message: ConversationMessage) -> PromptMessage:
    # Content is sent as budgeted; speakers are listed under <participants>
    return {"role": message.role, "content": message.content}


def measure_fixed_costs(
    personality: LoadedPersonality,
    context: RequestContext,
    message: MessageContent,
    preprocessing: PreprocessingResults | None = None,
    *,
    now: datetime,
    include_memory_wrapper: bool = False,
    counter: TokenCounter = count_text_tokens,
) -> FixedPromptCosts:
    """Measure the system prompt and current message before budgeting.

    The memory archive wrapper is charged to the system prompt when memories
    may be admitted; the memory lines themselves are charged by the budget.
    """
    system_tokens = counter(render_system_prompt(personality, context, now=now))
    if include_memory_wrapper:
        system_tokens += counter(f"\n\n{MEMORY_ARCHIVE_OPEN}\n{MEMORY_ARCHIVE_CLOSE}")
    current_tokens = counter(render_current_message(message, context, preprocessing))
    return FixedPromptCosts(
        system_prompt_tokens=system_tokens,
        current_message_tokens=current_tokens,
    )


def assemble_prompt(
    personality: LoadedPersonality,
    context: RequestContext,
    allocation: BudgetAllocation,
    preprocessing: PreprocessingResults | None,
    message: MessageContent,
    *,
    now: datetime | None = None,
    counter: TokenCounter = count_text_tokens,
) -> AssembledPrompt:
    """Build the ordered message list for the model.

    Args:
        personality: The personality being addressed.
        context: Request context.
        allocation: Budget decision; only admitted history and memories are
            rendered.
        preprocessing: Dependency outputs for attachments and references.
        message: The triggering message.
        now: Timestamp rendered in the context section.
        counter: Token counter for the total estimate.

    Returns:
        AssembledPrompt whose ``messages`` start with the system message,
        continue with admitted history and end with the current user turn.

    Raises:
        PromptAssemblyError: If the prompt would be empty.

    """
    rendered_at = now or datetime.now(UTC)
    system_prompt = render_system_prompt(
        personality,
        context,
        memories=allocation.memories,
        now=rendered_at,
    )
    if not _current_message_body(message, context, preprocessing):
        msg = "Current message has no text, attachments or references"
        raise PromptAssemblyError(msg)
    current_message = render_current_message(message, context, preprocessing)

    messages: list[PromptMessage] = [{"role": "system", "content": system_prompt}]
    messages.extend(
        _history_turn(history_message)
        for history_message in allocation.history
        if history_message.role != "system"
    )
    messages.append({"role": "user", "content": current_message})

    total_tokens = count_message_tokens(messages, counter)
    logger.info(
        "Assembled prompt for %s: %s message(s), %s memory(ies), ~%s tokens",
        personality.name,
        len(messages),
        len(allocation.memories),
        total_tokens,
    )
    return AssembledPrompt(
        messages=messages,
        total_tokens=total_tokens,
        system_prompt=system_prompt,
        current_message=current_message,
        history_count=len(allocation.history),
        memory_count=len(allocation.memories),
    )


def reduce_history(
    messages: Sequence[PromptMessage],
    fraction: float,
) -> list[PromptMessage]:
    """Drop the oldest `fraction` of history turns, keeping system and current."""
    if len(messages) <= 2:  # noqa: PLR2004
        return list(messages)
    history = list(messages[1:-1])
    drop = int(len(history) * fraction)
    return [messages[0], *history[drop:], messages[-1]]
