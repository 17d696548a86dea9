"""Build the request context attached to a generation job from Discord state."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, cast

import discord

from personacord.core.config import load_config_or_default, settings
from personacord.core.config.constants import (
    DEFAULT_CONTEXT_MAX_MESSAGES,
    HISTORY_FETCH_CEILING,
)
from personacord.jobs.schemas import (
    AttachmentMetadata,
    ChannelInfo,
    ConversationMessage,
    DiscordEnvironment,
    GuildInfo,
    GuildMemberInfo,
    MentionedPersona,
    ReferencedChannel,
    ReferencedMessage,
    RequestContext,
    ThreadInfo,
)

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from datetime import datetime

    from personacord.core.models import AttachmentKind
    from personacord.jobs.schemas import LoadedPersonality, MessageRole

logger = logging.getLogger(__name__)

DISCORD_MESSAGE_LINK_RE = re.compile(
    r"https?://(?:(?:ptb|canary)\.)?discord(?:app)?\.com/channels/"
    r"(?P<guild>\d+|@me)/(?P<channel>\d+)/(?P<message>\d+)",
)
CHANNEL_MENTION_RE = re.compile(r"<#(\d+)>")
HISTORY_MESSAGE_TYPES = (discord.MessageType.default, discord.MessageType.reply)
FETCH_EXCEPTIONS = (discord.NotFound, discord.Forbidden, discord.HTTPException)

_TEXT_CONTENT_TYPES = (
    "application/json",
    "application/xml",
    "application/javascript",
)


@dataclass(frozen=True, slots=True)
class ContextOptions:
    """Request-level settings for context assembly."""

    max_messages: int = DEFAULT_CONTEXT_MAX_MESSAGES
    max_age_seconds: float | None = None
    known_personas: Mapping[str, str] = field(default_factory=dict)
    active_persona_id: str | None = None
    active_persona_name: str | None = None
    user_internal_id: str | None = None
    user_timezone: str | None = None
    focus_mode_enabled: bool = False
    incognito_mode_active: bool = False


def context_options_from_config(
    config: Mapping[str, Any],
    **request_fields: Any,
) -> ContextOptions:
    """Return ContextOptions with the configured history caps.

    `request_fields` carry the per-request persona, user and mode values.
    """
    return ContextOptions(
        max_messages=settings.context_max_messages(config),
        max_age_seconds=settings.context_max_age_seconds(config),
        **request_fields,
    )


@dataclass(frozen=True, slots=True)
class HistoryLimits:
    """Effective history caps for one request."""

    max_messages: int | None
    max_age_seconds: float | None

    @property
    def fetch_limit(self) -> int:
        """Return how many messages to read from Discord."""
        return self.max_messages or HISTORY_FETCH_CEILING


def resolve_history_limits(
    options: ContextOptions,
    personality: LoadedPersonality | None = None,
) -> HistoryLimits:
    """Pick the history cap: by age when configured, else by count.

    A personality's extended-context overrides narrow the selected cap and can
    add the other one; the smaller value always wins.
    """
    max_messages: int | None
    max_age: float | None
    if options.max_age_seconds is not None:
        max_messages, max_age = None, options.max_age_seconds
    else:
        max_messages, max_age = options.max_messages, None

    if personality is not None:
        override_messages = personality.extended_context_max_messages
        if override_messages is not None:
            max_messages = (
                override_messages
                if max_messages is None
                else min(max_messages, override_messages)
            )
        override_age = personality.extended_context_max_age
        if override_age is not None:
            max_age = (
                float(override_age) if max_age is None else min(max_age, override_age)
            )

    return HistoryLimits(max_messages=max_messages, max_age_seconds=max_age)


def classify_attachment(
    content_type: str | None,
    *,
    is_voice_message: bool = False,
) -> AttachmentKind:
    """Classify an attachment by its MIME type."""
    if is_voice_message:
        return "voice"
    normalized = (content_type or "").split(";", 1)[0].strip().lower()
    if normalized.startswith("image/"):
        return "image"
    if normalized.startswith("audio/"):
        return "audio"
    if normalized.startswith("text/") or normalized in _TEXT_CONTENT_TYPES:
        return "text"
    return "other"


def attachment_metadata(attachment: discord.Attachment) -> AttachmentMetadata:
    """Convert a Discord attachment into its wire form."""
    is_voice = getattr(attachment, "is_voice_message", None)
    return AttachmentMetadata(
        url=attachment.url,
        content_type=attachment.content_type or "application/octet-stream",
        name=attachment.filename,
        size=attachment.size,
        is_voice_message=bool(is_voice()) if callable(is_voice) else False,
        duration=getattr(attachment, "duration", None),
        original_url=getattr(attachment, "proxy_url", None),
    )


def format_embeds(embeds: Sequence[discord.Embed]) -> str:
    """Flatten embeds into plain text."""
    blocks: list[str] = []
    for embed in embeds:
        parts = [part for part in (embed.title, embed.description) if part]
        parts.extend(
            f"{embed_field.name}: {embed_field.value}" for embed_field in embed.fields
        )
        footer_text = getattr(embed.footer, "text", None)
        if footer_text:
            parts.append(footer_text)
        if parts:
            blocks.append("\n".join(parts))
    return "\n\n".join(blocks)


def describe_location(channel: object) -> str:
    """Render where a message was posted."""
    guild = getattr(channel, "guild", None)
    if guild is None:
        return "Direct Messages"
    name = getattr(channel, "name", "unknown")
    parent = getattr(channel, "parent", None)
    if isinstance(channel, discord.Thread) and parent is not None:
        return f"{guild.name} > #{parent.name} > {name}"
    return f"{guild.name} > #{name}"


def build_environment(channel: object) -> DiscordEnvironment:
    """Describe the DM or guild environment of `channel`."""
    guild = getattr(channel, "guild", None)
    if guild is None:
        return DiscordEnvironment(type="dm")

    channel_info = ChannelInfo(
        id=str(getattr(channel, "id", "")),
        name=str(getattr(channel, "name", "")),
        type=str(getattr(channel, "type", "text")),
    )
    thread_info: ThreadInfo | None = None
    parent = getattr(channel, "parent", None)
    if isinstance(channel, discord.Thread) and parent is not None:
        parent_info = ChannelInfo(
            id=str(parent.id),
            name=parent.name,
            type=str(parent.type),
        )
        thread_info = ThreadInfo(
            id=str(channel.id),
            name=channel.name,
            parent_channel=parent_info,
        )
        channel_info = parent_info
    return DiscordEnvironment(
        type="guild",
        guild=GuildInfo(id=str(guild.id), name=guild.name),
        channel=channel_info,
        thread=thread_info,
    )


def guild_member_info(member: object) -> GuildMemberInfo | None:
    """Return roles, color and join date for a guild member (None for users)."""
    roles = getattr(member, "roles", None)
    if roles is None:
        return None
    color = getattr(member, "color", None)
    joined_at: datetime | None = getattr(member, "joined_at", None)
    return GuildMemberInfo(
        roles=[role.name for role in roles if not role.is_default()],
        display_color=str(color) if color is not None and color.value else None,
        joined_at=joined_at.isoformat() if joined_at is not None else None,
    )


def _is_personality_author(
    message: discord.Message,
    bot_user: object | None,
    personality: LoadedPersonality | None,
) -> bool:
    if bot_user is not None and message.author == bot_user:
        return True
    if message.webhook_id is None or personality is None:
        return False
    author_name = getattr(message.author, "name", "")
    return author_name in {personality.name, personality.label}


def _message_text(message: discord.Message) -> str:
    parts = [message.content] if message.content else []
    embed_text = format_embeds(message.embeds)
    if embed_text:
        parts.append(embed_text)
    parts.extend(
        f"[Attachment: {attachment.filename}]" for attachment in message.attachments
    )
    return "\n".join(parts)


def _to_history_message(
    message: discord.Message,
    *,
    bot_user: object | None,
    personality: LoadedPersonality | None,
) -> ConversationMessage | None:
    content = _message_text(message)
    if not content:
        return None
    role: MessageRole = (
        "assistant"
        if _is_personality_author(message, bot_user, personality)
        else "user"
    )
    persona_name = (
        personality.name
        if role == "assistant" and personality is not None
        else getattr(message.author, "display_name", None)
    )
    return ConversationMessage(
        role=role,
        content=content,
        id=str(message.id),
        created_at=message.created_at,
        persona_name=persona_name,
        discord_user_id=None if role == "assistant" else str(message.author.id),
    )


async def fetch_history(
    trigger: discord.Message,
    *,
    bot_user: object | None,
    personality: LoadedPersonality | None,
    limits: HistoryLimits,
) -> tuple[list[ConversationMessage], list[discord.Message]]:
    """Read channel history before `trigger`, oldest first.

    Returns:
        The converted history and the raw messages it came from. Both are
        empty when the channel history cannot be read.

    """
    cutoff = (
        trigger.created_at - timedelta(seconds=limits.max_age_seconds)
        if limits.max_age_seconds is not None
        else None
    )
    raw_messages: list[discord.Message] = []
    try:
        async for message in trigger.channel.history(
            before=trigger,
            limit=limits.fetch_limit,
        ):
            if cutoff is not None and message.created_at < cutoff:
                break
            if message.type not in HISTORY_MESSAGE_TYPES:
                continue
            raw_messages.append(message)
    except (discord.Forbidden, discord.HTTPException) as exc:
        logger.warning(
            "Could not read history for channel %s, continuing without it: %s",
            getattr(trigger.channel, "id", None),
            exc,
        )
        return [], []

    raw_messages.reverse()
    history: list[ConversationMessage] = []
    kept: list[discord.Message] = []
    for message in raw_messages:
        converted = _to_history_message(
            message,
            bot_user=bot_user,
            personality=personality,
        )
        if converted is not None:
            history.append(converted)
            kept.append(message)
    return history, kept


async def _fetch_reply_target(trigger: discord.Message) -> discord.Message | None:
    reference = trigger.reference
    if reference is None or reference.message_id is None:
        return None
    resolved = getattr(reference, "resolved", None) or reference.cached_message
    if resolved is not None and hasattr(resolved, "author"):
        return cast("discord.Message", resolved)
    try:
        return await trigger.channel.fetch_message(reference.message_id)
    except FETCH_EXCEPTIONS as exc:
        logger.warning("Could not resolve reply target %s: %s", reference.message_id, exc)
        return None


async def _fetch_linked_message(
    client: discord.Client,
    channel_id: int,
    message_id: int,
) -> discord.Message | None:
    try:
        channel: Any = client.get_channel(channel_id)
        if channel is None:
            channel = await client.fetch_channel(channel_id)
        fetch_message = getattr(channel, "fetch_message", None)
        if not callable(fetch_message):
            return None
        return await fetch_message(message_id)
    except FETCH_EXCEPTIONS as exc:
        logger.warning("Could not resolve linked message %s: %s", message_id, exc)
        return None


def _to_referenced_message(
    message: discord.Message,
    reference_number: int,
) -> ReferencedMessage:
    return ReferencedMessage(
        reference_number=reference_number,
        discord_message_id=str(message.id),
        discord_user_id=str(message.author.id),
        author_username=message.author.name,
        author_display_name=message.author.display_name,
        content=message.content,
        embeds=format_embeds(message.embeds),
        timestamp=message.created_at,
        location_context=describe_location(message.channel),
        attachments=[attachment_metadata(item) for item in message.attachments],
    )


async def collect_referenced_messages(
    trigger: discord.Message,
    client: discord.Client,
) -> list[ReferencedMessage]:
    """Resolve the reply target and message links, numbered from 1.

    The reply target comes first, then links in the order they appear in the
    text. Messages are de-duplicated by id and unresolvable ones are skipped.
    """
    found: list[discord.Message] = []
    seen_ids: set[int] = {trigger.id}

    reply_target = await _fetch_reply_target(trigger)
    if reply_target is not None and reply_target.id not in seen_ids:
        seen_ids.add(reply_target.id)
        found.append(reply_target)

    for match in DISCORD_MESSAGE_LINK_RE.finditer(trigger.content or ""):
        message_id = int(match.group("message"))
        if message_id in seen_ids:
            continue
        seen_ids.add(message_id)
        linked = await _fetch_linked_message(
            client,
            int(match.group("channel")),
            message_id,
        )
        if linked is not None:
            found.append(linked)

    return [
        _to_referenced_message(message, number)
        for number, message in enumerate(found, start=1)
    ]


def find_mentioned_personas(
    content: str,
    known_personas: Mapping[str, str],
) -> list[MentionedPersona]:
    """Return personas named with ``@Name`` in `content`, longest names first."""
    mentioned: list[MentionedPersona] = []
    seen: set[str] = set()
    lowered = content.lower()
    for name in sorted(known_personas, key=len, reverse=True):
        pattern = re.compile(rf"@{re.escape(name.lower())}(?![\w])")
        if pattern.search(lowered) and known_personas[name] not in seen:
            seen.add(known_personas[name])
            mentioned.append(
                MentionedPersona(persona_id=known_personas[name], persona_name=name),
            )
    return mentioned


def find_referenced_channels(
    content: str,
    client: discord.Client | None = None,
) -> list[ReferencedChannel]:
    """Return ``<#id>`` channel mentions in order of appearance."""
    channels: list[ReferencedChannel] = []
    seen: set[str] = set()
    for channel_id in CHANNEL_MENTION_RE.findall(content):
        if channel_id in seen:
            continue
        seen.add(channel_id)
        channel = client.get_channel(int(channel_id)) if client is not None else None
        channels.append(
            ReferencedChannel(
                channel_id=channel_id,
                channel_name=getattr(channel, "name", None),
            ),
        )
    return channels


def _participant_guild_info(
    trigger: discord.Message,
    history_messages: Sequence[discord.Message],
) -> dict[str, GuildMemberInfo] | None:
    participants: dict[str, GuildMemberInfo] = {}
    for message in (*history_messages, trigger):
        if message.webhook_id is not None or getattr(message.author, "bot", False):
            continue
        key = f"discord:{message.author.id}"
        if key in participants:
            continue
        info = guild_member_info(message.author)
        if info is not None:
            participants[key] = info
    return participants or None


async def assemble_request_context(
    trigger: discord.Message,
    *,
    client: discord.Client,
    personality: LoadedPersonality | None = None,
    options: ContextOptions | None = None,
) -> RequestContext:
    """Build the RequestContext for a message that triggered a personality.

    Args:
        trigger: The Discord message that triggered the personality.
        client: Connected client, used to resolve message links and channels.
        personality: Personality being addressed; narrows the history cap and
            identifies its own webhook messages as assistant turns.
        options: Request-level settings; the history caps default to the
            ``context_max_messages`` and ``context_max_age_seconds`` config keys.

    Returns:
        The assembled context. Unreadable history yields an empty history
        rather than an error.

    """
    if options is None:
        options = context_options_from_config(load_config_or_default())
    bot_user = client.user
    limits = resolve_history_limits(options, personality)

    history, history_messages = await fetch_history(
        trigger,
        bot_user=bot_user,
        personality=personality,
        limits=limits,
    )
    references = await collect_referenced_messages(trigger, client)
    content = trigger.content or ""
    channel = trigger.channel
    guild = getattr(channel, "guild", None)

    return RequestContext(
        user_id=str(trigger.author.id),
        user_internal_id=options.user_internal_id,
        user_name=getattr(trigger.author, "display_name", None),
        discord_username=trigger.author.name,
        channel_id=str(channel.id),
        server_id=str(guild.id) if guild is not None else None,
        is_proxy_message=trigger.webhook_id is not None,
        active_persona_id=options.active_persona_id,
        active_persona_name=options.active_persona_name,
        user_timezone=options.user_timezone,
        conversation_history=history,
        attachments=[attachment_metadata(item) for item in trigger.attachments],
        environment=build_environment(channel),
        referenced_messages=references,
        mentioned_personas=find_mentioned_personas(content, options.known_personas),
        referenced_channels=find_referenced_channels(content, client),
        active_persona_guild_info=guild_member_info(trigger.author),
        participant_guild_info=_participant_guild_info(trigger, history_messages),
        focus_mode_enabled=options.focus_mode_enabled,
        incognito_mode_active=options.incognito_mode_active,
    )
