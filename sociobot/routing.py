"""Routing decisions: which messages the agent sees, and in which mode."""

import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import discord

from .acl import is_mentioned
from .classifier import is_after_cursor, is_own_message

logger = logging.getLogger(__name__)

SCOPES = ("dms", "botdms", "text", "all")


class ChannelKind(enum.Enum):
    DIRECT_MESSAGE = "direct-message"
    SHARED_BOT_CHANNEL = "shared-bot-channel"
    GUILD_TEXT = "guild-text"


@dataclass(frozen=True)
class Scope:
    """Channel categories visited by backlog mode."""

    dms: bool = True
    botdms: bool = True
    text: bool = True

    @classmethod
    def parse(cls, value: str | None) -> "Scope":
        """Parse a comma-separated scope list such as ``dms,botdms``."""
        if not value:
            return cls()
        names = {part.strip().lower() for part in value.split(",") if part.strip()}
        unknown = names - set(SCOPES)
        if unknown:
            raise ValueError(
                f"Unknown scope(s): {', '.join(sorted(unknown))} (expected {'|'.join(SCOPES)})"
            )
        if not names or "all" in names:
            return cls()
        return cls(dms="dms" in names, botdms="botdms" in names, text="text" in names)

    def __str__(self) -> str:
        if self.dms and self.botdms and self.text:
            return "all"
        return ",".join(name for name in ("dms", "botdms", "text") if getattr(self, name))


@dataclass(frozen=True)
class RouteDecision:
    process: bool
    reason: str
    is_mention: bool = False
    is_dm: bool = False
    has_view_permission: bool = False


def is_direct_message(channel: Any) -> bool:
    return getattr(channel, "type", None) == discord.ChannelType.private


def classify_channel(channel: Any, shared_channel_id: int | None) -> ChannelKind:
    if is_direct_message(channel):
        return ChannelKind.DIRECT_MESSAGE
    if shared_channel_id is not None and channel.id == shared_channel_id:
        return ChannelKind.SHARED_BOT_CHANNEL
    return ChannelKind.GUILD_TEXT


def can_view(channel: Any) -> bool:
    """Whether this client's own member may view a guild channel."""
    guild = getattr(channel, "guild", None)
    if guild is None or guild.me is None:
        return False
    return bool(channel.permissions_for(guild.me).view_channel)


def decide_realtime(message: Any, self_id: int, shared_channel_id: int | None) -> RouteDecision:
    """Decide whether a live message should be handed to the agent."""
    channel = message.channel
    if (
        shared_channel_id is not None
        and channel.id == shared_channel_id
        and message.author.bot
        and message.author.id != self_id
    ):
        return RouteDecision(False, "other bot message in shared bot channel")

    mention = is_mentioned(message, self_id)
    dm = is_direct_message(channel)
    view = not dm and can_view(channel)

    if mention:
        reason = "mentioned bot"
    elif dm:
        reason = "direct message"
    elif view:
        reason = "has view permission"
    else:
        reason = "no routing criteria met"
    return RouteDecision(
        process=mention or dm or view,
        reason=reason,
        is_mention=mention,
        is_dm=dm,
        has_view_permission=view,
    )


def channel_slowdown(channel: Any) -> int:
    return int(getattr(channel, "slowmode_delay", 0) or 0)


def is_low_priority(message: Any) -> bool:
    """Bot-authored messages and slowed-down channels take the delayed path."""
    return bool(message.author.bot) or channel_slowdown(message.channel) > 0


def infer_bootstrap_cutoff(messages: Iterable[Any], self_id: int) -> int | None:
    """Guess a cursor for a channel that has none.

    Uses the message our most recent reply answered, or that reply itself.
    """
    own = [m for m in messages if is_own_message(m, self_id)]
    if not own:
        return None
    latest = max(own, key=lambda m: int(m.id))
    reference = latest.reference
    if reference is not None and reference.message_id is not None:
        return int(reference.message_id)
    return int(latest.id)


def select_backlog(messages: Iterable[Any], cursor: int | None, self_id: int) -> list[Any]:
    """Keep others' messages newer than the cursor, oldest first."""
    selected = [
        m for m in messages if is_after_cursor(m, cursor) and not is_own_message(m, self_id)
    ]
    return sorted(selected, key=lambda m: int(m.id))


def describe_channel(channel: Any) -> str:
    name = getattr(channel, "name", None)
    if name:
        return name
    recipient = getattr(channel, "recipient", None)
    return f"DM with {recipient.name if recipient else 'unknown'}"
