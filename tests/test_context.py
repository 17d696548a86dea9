from __future__ import annotations

import pathlib
from dataclasses import dataclass, field
from datetime import timedelta
from types import SimpleNamespace
from typing import Any

import discord
import pytest

from personacord.logic.context import (
    ContextOptions,
    HistoryLimits,
    assemble_request_context,
    classify_attachment,
    collect_referenced_messages,
    context_options_from_config,
    fetch_history,
    find_mentioned_personas,
    resolve_history_limits,
)

from ._fakes import BASE_TIME, make_personality

BOT = SimpleNamespace(
    id=1,
    name="personacord",
    display_name="personacord",
    bot=True,
    mention="<@1>",
)
ALICE = SimpleNamespace(id=42, name="alice", display_name="Alice", bot=False)
BOB = SimpleNamespace(id=43, name="bob", display_name="Bob", bot=False)
GUILD = SimpleNamespace(id=7, name="Archive")


@dataclass
class _Channel:
    id: int = 100
    name: str = "general"
    type: str = "text"
    guild: Any = None
    messages: list[Any] = field(default_factory=list)
    history_error: Exception | None = None

    async def history(self, *, before: Any, limit: int) -> Any:
        if self.history_error is not None:
            raise self.history_error
        older = [message for message in self.messages if message.id < before.id]
        for message in sorted(older, key=lambda item: item.id, reverse=True)[:limit]:
            yield message

    async def fetch_message(self, message_id: int) -> Any:
        for message in self.messages:
            if message.id == message_id:
                return message
        raise discord.NotFound(SimpleNamespace(status=404, reason="Not Found"), "Unknown Message")


def _message(
    message_id: int,
    author: Any,
    content: str,
    channel: _Channel,
    **overrides: Any,
) -> SimpleNamespace:
    values: dict[str, Any] = {
        "id": message_id,
        "author": author,
        "content": content,
        "channel": channel,
        "created_at": BASE_TIME + timedelta(minutes=message_id),
        "type": discord.MessageType.default,
        "webhook_id": None,
        "embeds": [],
        "attachments": [],
        "reference": None,
    }
    values.update(overrides)
    message = SimpleNamespace(**values)
    channel.messages.append(message)
    return message


def _client(*channels: _Channel) -> SimpleNamespace:
    by_id = {channel.id: channel for channel in channels}

    async def _fetch_channel(channel_id: int) -> Any:
        raise discord.Forbidden(SimpleNamespace(status=403, reason="Forbidden"), "Missing Access")

    return SimpleNamespace(user=BOT, get_channel=by_id.get, fetch_channel=_fetch_channel)


def test_age_limit_replaces_count_and_overrides_narrow_it() -> None:
    assert resolve_history_limits(ContextOptions(max_messages=30)) == HistoryLimits(
        max_messages=30,
        max_age_seconds=None,
    )
    by_age = resolve_history_limits(
        ContextOptions(max_messages=30, max_age_seconds=3600),
        make_personality(extended_context_max_age=600, extended_context_max_messages=20),
    )

    assert by_age == HistoryLimits(max_messages=20, max_age_seconds=600)
    assert by_age.fetch_limit == 20
    assert HistoryLimits(max_messages=None, max_age_seconds=60).fetch_limit == 500


@pytest.mark.parametrize(
    ("content_type", "is_voice", "expected"),
    [
        ("image/png", False, "image"),
        ("audio/mpeg", False, "audio"),
        ("audio/ogg", True, "voice"),
        ("text/plain; charset=utf-8", False, "text"),
        ("application/json", False, "text"),
        ("application/zip", False, "other"),
        (None, False, "other"),
    ],
)
def test_classify_attachment(
    content_type: str | None,
    is_voice: bool,  # noqa: FBT001
    expected: str,
) -> None:
    assert classify_attachment(content_type, is_voice_message=is_voice) == expected


@pytest.mark.asyncio
async def test_history_is_oldest_first_with_roles() -> None:
    channel = _Channel()
    _message(1, ALICE, "hello there", channel)
    _message(2, BOB, "", channel, type=discord.MessageType.pins_add)
    _message(3, BOT, "Hello, Alice.", channel)
    _message(4, BOB, "", channel)
    trigger = _message(5, ALICE, "what did I miss?", channel)

    history, raw = await fetch_history(
        trigger,
        bot_user=BOT,
        personality=make_personality(),
        limits=HistoryLimits(max_messages=10, max_age_seconds=None),
    )

    assert [(item.role, item.content, item.persona_name) for item in history] == [
        ("user", "hello there", "Alice"),
        ("assistant", "Hello, Alice.", "Lilith"),
    ]
    assert history[0].discord_user_id == "42"
    assert history[1].discord_user_id is None
    assert [message.id for message in raw] == [1, 3]


@pytest.mark.asyncio
async def test_history_stops_at_the_age_cutoff() -> None:
    channel = _Channel()
    _message(1, ALICE, "too old", channel)
    _message(9, BOB, "recent", channel)
    trigger = _message(10, ALICE, "now", channel)

    history, _ = await fetch_history(
        trigger,
        bot_user=BOT,
        personality=None,
        limits=HistoryLimits(max_messages=None, max_age_seconds=300),
    )

    assert [item.content for item in history] == ["recent"]


@pytest.mark.asyncio
async def test_unreadable_history_is_empty() -> None:
    channel = _Channel(
        history_error=discord.Forbidden(
            SimpleNamespace(status=403, reason="Forbidden"),
            "Missing Access",
        ),
    )
    trigger = _message(5, ALICE, "anyone?", channel)

    assert await fetch_history(
        trigger,
        bot_user=BOT,
        personality=None,
        limits=HistoryLimits(max_messages=10, max_age_seconds=None),
    ) == ([], [])


@pytest.mark.asyncio
async def test_references_put_the_reply_first_then_links() -> None:
    channel = _Channel(guild=GUILD)
    replied = _message(1, BOB, "the map is in the east wing", channel)
    linked = _message(2, ALICE, "bring a lantern", channel)
    trigger = _message(
        3,
        ALICE,
        (
            "see https://discord.com/channels/7/100/2 and "
            "https://discord.com/channels/7/100/1 and "
            "https://discord.com/channels/7/555/99"
        ),
        channel,
        reference=SimpleNamespace(message_id=1, resolved=replied, cached_message=None),
    )

    references = await collect_referenced_messages(trigger, _client(channel))

    assert [
        (item.reference_number, item.discord_message_id) for item in references
    ] == [(1, "1"), (2, "2")]
    assert references[0].author_display_name == "Bob"
    assert references[0].location_context == "Archive > #general"
    assert references[1].content == linked.content


@pytest.mark.asyncio
async def test_missing_reply_target_is_skipped() -> None:
    channel = _Channel()
    trigger = _message(
        3,
        ALICE,
        "replying to something deleted",
        channel,
        reference=SimpleNamespace(message_id=99, resolved=None, cached_message=None),
    )

    assert await collect_referenced_messages(trigger, _client(channel)) == []


def test_mentioned_personas_match_longest_name_first() -> None:
    mentioned = find_mentioned_personas(
        "@Lilith Marsh and @lilith, come here. @Liliths is someone else.",
        {"Lilith": "p-1", "Lilith Marsh": "p-2"},
    )

    assert [(item.persona_id, item.persona_name) for item in mentioned] == [
        ("p-2", "Lilith Marsh"),
        ("p-1", "Lilith"),
    ]


@pytest.mark.asyncio
async def test_request_context_for_a_guild_message() -> None:
    channel = _Channel(guild=GUILD)
    _message(1, BOB, "morning", channel)
    trigger = _message(
        2,
        ALICE,
        "<@1> @Lilith check <#100>",
        channel,
        attachments=[
            SimpleNamespace(
                url="https://cdn.example.com/map.png",
                content_type="image/png",
                filename="map.png",
                size=2048,
                proxy_url="https://media.example.com/map.png",
            ),
        ],
    )

    context = await assemble_request_context(
        trigger,
        client=_client(channel),
        personality=make_personality(),
        options=ContextOptions(
            known_personas={"Lilith": "pers-1"},
            user_timezone="Europe/Paris",
            incognito_mode_active=True,
        ),
    )

    assert context.user_id == "42"
    assert context.user_name == "Alice"
    assert context.server_id == "7"
    assert context.environment is not None
    assert context.environment.type == "guild"
    assert context.environment.guild is not None
    assert context.environment.guild.name == "Archive"
    assert [item.content for item in context.conversation_history] == ["morning"]
    assert context.attachments[0].name == "map.png"
    assert context.attachments[0].original_url == "https://media.example.com/map.png"
    assert [item.persona_id for item in context.mentioned_personas] == ["pers-1"]
    assert [(item.channel_id, item.channel_name) for item in context.referenced_channels] == [
        ("100", "general"),
    ]
    assert context.user_timezone == "Europe/Paris"
    assert context.incognito_mode_active is True


def test_context_options_take_history_caps_from_config() -> None:
    options = context_options_from_config(
        {"context_max_messages": 25, "context_max_age_seconds": "900"},
        user_timezone="Asia/Tokyo",
        focus_mode_enabled=True,
    )

    assert options.max_messages == 25
    assert options.max_age_seconds == 900.0
    assert options.user_timezone == "Asia/Tokyo"
    assert options.focus_mode_enabled is True
    assert context_options_from_config({}) == ContextOptions()


@pytest.mark.asyncio
async def test_request_context_defaults_to_configured_history_cap(
    tmp_path: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    (tmp_path / "config.yaml").write_text("context_max_messages: 2\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    channel = _Channel()
    for message_id in range(1, 5):
        _message(message_id, BOB, f"note {message_id}", channel)
    trigger = _message(5, ALICE, "<@1> what did Bob say?", channel)

    context = await assemble_request_context(trigger, client=_client(channel))

    assert [item.content for item in context.conversation_history] == ["note 3", "note 4"]
