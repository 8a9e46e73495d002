"""Construction of the context handed to the agent for a message or batch."""

import logging
import re
from dataclasses import dataclass
from typing import Any

import discord

from .acl import AclAssessment, add_response_guidance
from .routing import describe_channel, is_direct_message

logger = logging.getLogger(__name__)

USER_MENTION = re.compile(r"<@!?(\d+)>")
CHANNEL_MENTION = re.compile(r"<#(\d+)>")
REACTION_PREVIEW_LIMIT = 500


@dataclass(frozen=True)
class ChannelInfo:
    """Channel metadata exposed to the agent."""

    id: int
    name: str
    privacy: str
    server: str
    members: list[str]
    is_dm: bool

    @classmethod
    def from_channel(cls, channel: Any) -> "ChannelInfo":
        dm = is_direct_message(channel)
        guild = None if dm else getattr(channel, "guild", None)
        if dm:
            recipient = getattr(channel, "recipient", None)
            members = [recipient.name] if recipient else []
            privacy = "private"
        elif guild is not None:
            members = [m.name for m in guild.members if channel.permissions_for(m).view_channel]
            everyone = channel.overwrites_for(guild.default_role)
            privacy = "private" if everyone.view_channel is False else "public"
        else:
            members = []
            privacy = "public"
        return cls(
            id=channel.id,
            name=describe_channel(channel),
            privacy=privacy,
            server=guild.name if guild is not None else "DM",
            members=members,
            is_dm=dm,
        )

    def environment(self, author: str) -> dict[str, str]:
        return {
            "ZDS_AI_AGENT_MESSAGE_SOURCE": "discord",
            "ZDS_AI_AGENT_MESSAGE_CHANNEL": self.name,
            "ZDS_AI_AGENT_MESSAGE_AUTHOR": author,
            "ZDS_AI_AGENT_MESSAGE_PRIVACY": self.privacy,
            "ZDS_AI_AGENT_MESSAGE_SERVER": self.server,
            "ZDS_AI_AGENT_MESSAGE_MEMBERS": ",".join(self.members),
        }


async def resolve_mentions(content: str, client: Any) -> str:
    """Replace ``<@id>`` and ``<#id>`` markup with readable names."""
    names: dict[str, str] = {}
    for user_id in set(USER_MENTION.findall(content)):
        user = client.get_user(int(user_id))
        if user is None:
            try:
                user = await client.fetch_user(int(user_id))
            except discord.HTTPException as e:
                logger.debug(f"Could not resolve mention {user_id}: {e}")
                continue
        names[user_id] = f"@{user.name}"

    converted = USER_MENTION.sub(lambda m: names.get(m.group(1), m.group(0)), content)

    def channel_name(match: re.Match) -> str:
        channel = client.get_channel(int(match.group(1)))
        name = getattr(channel, "name", None) if channel is not None else None
        return f"#{name}" if name else match.group(0)

    return CHANNEL_MENTION.sub(channel_name, converted)


def format_size(size: int) -> str:
    size_kb = round(size / 1024)
    return f"{size_kb}KB" if size_kb < 1024 else f"{round(size_kb / 1024)}MB"


def format_attachments(attachments: list[Any]) -> str:
    if not attachments:
        return ""
    lines = ["", "", "Attachments:"]
    for attachment in attachments:
        content_type = attachment.content_type or "unknown type"
        lines.append(
            f"- {attachment.filename} ({content_type}, {format_size(attachment.size)})"
            f" - {attachment.url}"
        )
    return "\n".join(lines)


def is_audio_attachment(attachment: Any) -> bool:
    return (attachment.content_type or "").startswith("audio/")


def build_realtime_query(
    message: Any,
    content: str,
    channel_info: ChannelInfo,
    assessment: AclAssessment | None = None,
    transcriptions: list[str] | None = None,
) -> str:
    """Build the prompt text for one live message."""
    query = (
        f"New Discord message from @{message.author.name} (ID: {message.author.id}) "
        f"in channel {channel_info.name} (ID: {channel_info.id}):\n\n{content}"
    )
    query += format_attachments(list(message.attachments))
    for transcription in transcriptions or []:
        query += f"\n\nTranscription of voice message:\n{transcription}"
    if assessment is not None:
        query = add_response_guidance(query, assessment)
    return query


def build_reaction_notification(
    reactor: Any, emoji: Any, message: Any, channel_name: str
) -> str:
    """Describe a reaction event for the agent; never answered."""
    identifier = f":{emoji.name}:" if emoji.id else emoji.name
    preview = message.content[:REACTION_PREVIEW_LIMIT]
    truncated = "..." if len(message.content) > REACTION_PREVIEW_LIMIT else ""
    return (
        f"Reaction added by @{reactor.name} (ID: {reactor.id}) in channel {channel_name} "
        f"(ID: {message.channel.id}):\n\n"
        f"Reacted with {identifier} to message from @{message.author.name} "
        f"(ID: {message.author.id}, Message ID: {message.id}):\n"
        f'"{preview}{truncated}"\n\n'
        "This message is for your information only. Do not reply -- "
        "replies to this message will not be processed."
    )


def batch_entry(message: Any, content: str, assessment: AclAssessment) -> dict[str, Any]:
    """One message record of the batch input file."""
    return {
        "id": str(message.id),
        "author": {"id": str(message.author.id), "username": message.author.name},
        "content": content,
        "timestamp": message.created_at.isoformat(),
        "informationalOnly": assessment.informational_only,
        "reactionsOnly": assessment.reactions_only,
    }
