"""Pytest configuration and fixtures."""

import json
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from sociobot.cursors import CursorStore

BOT_ID = 999
GUILD_ID = 100
AGENT_ROLE_ID = 200
SHARED_CHANNEL_ID = 700


def http_error(status: int = 404, cls: type = discord.NotFound) -> discord.HTTPException:
    """Build a discord.py HTTP error without a real response object."""
    return cls(SimpleNamespace(status=status, reason="Error"), "test error")


def history_of(messages: list[Any]):
    """Fake ``channel.history()`` honouring ``limit`` and ``after``."""

    def history(limit: int | None = 100, after: Any = None, **kwargs):
        selected = sorted(messages, key=lambda m: m.id)
        if after is not None:
            selected = [m for m in selected if m.id > after.id]
        else:
            selected = list(reversed(selected))
        if limit is not None:
            selected = selected[:limit]

        async def iterate():
            for message in selected:
                yield message

        return iterate()

    return MagicMock(side_effect=history)


class DiscordFakes:
    """Factories for lightweight stand-ins of discord.py objects."""

    http_error = staticmethod(http_error)
    history_of = staticmethod(history_of)

    def user(self, user_id: int, name: str = "alice", bot: bool = False, roles=()) -> Any:
        return SimpleNamespace(
            id=user_id, name=name, bot=bot, roles=[SimpleNamespace(id=r) for r in roles]
        )

    def guild(self, members=(), guild_id: int = GUILD_ID, name: str = "Test Guild") -> Any:
        me = self.user(BOT_ID, "sociobot", bot=True, roles=[AGENT_ROLE_ID])
        return SimpleNamespace(
            id=guild_id,
            name=name,
            me=me,
            members=[me, *members],
            default_role=SimpleNamespace(id=guild_id),
            text_channels=[],
        )

    def dm_channel(self, channel_id: int = 500, recipient: Any = None) -> Any:
        return SimpleNamespace(
            id=channel_id,
            type=discord.ChannelType.private,
            recipient=recipient or self.user(1, "alice"),
            guild=None,
            fetch_message=AsyncMock(side_effect=http_error()),
            history=history_of([]),
        )

    def text_channel(
        self,
        channel_id: int = 600,
        name: str = "general",
        guild: Any = None,
        *,
        viewable: bool = True,
        hidden_from: set[int] | None = None,
        slowmode: int = 0,
        everyone_view: bool | None = None,
    ) -> Any:
        hidden = hidden_from or set()

        def permissions_for(member):
            return SimpleNamespace(view_channel=viewable and member.id not in hidden)

        return SimpleNamespace(
            id=channel_id,
            name=name,
            type=discord.ChannelType.text,
            guild=guild if guild is not None else self.guild(),
            slowmode_delay=slowmode,
            permissions_for=permissions_for,
            overwrites_for=MagicMock(return_value=SimpleNamespace(view_channel=everyone_view)),
            fetch_message=AsyncMock(side_effect=http_error()),
            history=history_of([]),
        )

    def footer_embed(self, text: str) -> Any:
        return SimpleNamespace(footer=SimpleNamespace(text=text))

    def reference(self, message_id: int) -> Any:
        return SimpleNamespace(message_id=message_id, resolved=None)

    def message(
        self,
        message_id: int,
        author: Any,
        channel: Any,
        content: str = "hello",
        *,
        mentions=(),
        embeds=(),
        reply_to: int | None = None,
        attachments=(),
    ) -> Any:
        return SimpleNamespace(
            id=message_id,
            author=author,
            channel=channel,
            content=content,
            mentions=list(mentions),
            embeds=list(embeds),
            reference=self.reference(reply_to) if reply_to is not None else None,
            attachments=list(attachments),
            created_at=datetime(2024, 5, 1, 12, 30, 0, tzinfo=timezone.utc),
            reply=AsyncMock(return_value=SimpleNamespace(id=message_id + 10_000)),
            add_reaction=AsyncMock(),
        )


@pytest.fixture
def fake() -> DiscordFakes:
    """Factories for fake Discord objects."""
    return DiscordFakes()


@pytest.fixture
def test_config(tmp_path) -> dict[str, Any]:
    """Test configuration fixture."""
    return {
        "sociobot": {
            "discord": {
                "token": "test-token",
                "bot_user_id": str(BOT_ID),
                "dm_channel_ids": [],
                "bot_dms_channel_id": str(SHARED_CHANNEL_ID),
                "guilds": {str(GUILD_ID): {"agent_role_id": str(AGENT_ROLE_ID)}},
            },
            "acl": {"base": 6, "dm_ceiling": 1, "max_chain_depth": 20},
            "message_delay": 17000,
            "message_fetch_limit": 20,
            "breaker": {
                "max_failures": 5,
                "max_load_average": 21,
                "load_check_interval": 30,
                "max_concurrent": 3,
            },
            "agent": {"command": ["zai", "{source}", "{agent}"], "timeout": 5},
            "persistence": {"dir": str(tmp_path / "persistence")},
            "interactions": {"database": {"path": str(tmp_path / "interactions.db")}},
        }
    }


@pytest.fixture
def cursor_store(tmp_path) -> CursorStore:
    """Cursor store in a temporary directory."""
    return CursorStore(tmp_path / "persistence")


@pytest.fixture
def temp_db_path():
    """Temporary database path fixture."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as tmp:
        yield tmp.name
    Path(tmp.name).unlink(missing_ok=True)


@pytest.fixture
def temp_config_file(test_config):
    """Temporary config file fixture."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as tmp:
        json.dump(test_config, tmp)
        tmp.flush()  # Ensure data is written to disk
        yield tmp.name
    Path(tmp.name).unlink(missing_ok=True)
