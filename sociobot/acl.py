"""Agent Chain Length (ACL) metadata carried in outgoing message footers.

Every message an agent sends carries an embed footer such as
``acl:2 • Sent by a ZDS AI Agent • zds-agents.com``. The number counts the
consecutive automated hops that produced the message; agents refuse to
extend a chain past the ceiling computed for the channel.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any

import discord

logger = logging.getLogger(__name__)

FOOTER_SIGNATURE = "Sent by a ZDS AI Agent • zds-agents.com"
ACL_PATTERN = re.compile(r"acl:(\d+)")

DEFAULT_BASE = 6
DEFAULT_DM_CEILING = 1
DEFAULT_MAX_CHAIN_DEPTH = 20

COURTESY_MESSAGE = (
    "\n\nFor your information only.  Replies to this message will not be processed."
)
REACTIONS_ONLY_MESSAGE = (
    "\n\nNote: You are at the ACL limit.  You may only respond with a REACTION "
    "(e.g., REACTION:eyes) to acknowledge this message.  Text responses will be blocked."
)


@dataclass
class AclSettings:
    """Ceiling policy for one agent."""

    base: int = DEFAULT_BASE
    dm_ceiling: int = DEFAULT_DM_CEILING
    override: int | None = None
    max_chain_depth: int = DEFAULT_MAX_CHAIN_DEPTH
    agent_roles: dict[int, int] = field(default_factory=dict)  # guild id -> agent role id

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "AclSettings":
        acl_cfg = config.get("acl", {})
        guilds = config.get("discord", {}).get("guilds", {})
        agent_roles = {
            int(guild_id): int(guild_cfg["agent_role_id"])
            for guild_id, guild_cfg in guilds.items()
            if guild_cfg.get("agent_role_id")
        }
        override = config.get("max_acl")
        return cls(
            base=int(acl_cfg.get("base", DEFAULT_BASE)),
            dm_ceiling=int(acl_cfg.get("dm_ceiling", DEFAULT_DM_CEILING)),
            override=int(override) if override else None,
            max_chain_depth=int(acl_cfg.get("max_chain_depth", DEFAULT_MAX_CHAIN_DEPTH)),
            agent_roles=agent_roles,
        )


@dataclass(frozen=True)
class ChainInfo:
    """What the reply-chain ancestry of a message says about this agent."""

    participated: bool = False
    thread_author: bool = False
    depth: int = 0


@dataclass(frozen=True)
class AclAssessment:
    current: int
    ceiling: int
    effective_ceiling: int

    @property
    def reactions_only(self) -> bool:
        return self.current >= self.effective_ceiling

    @property
    def informational_only(self) -> bool:
        return self.current == self.effective_ceiling - 1

    @property
    def next_acl(self) -> int:
        return self.current + 1


def decode_acl(message: Any) -> int:
    """Return the chain length recorded on a message, 0 for humans or no footer."""
    if not message.author.bot or not message.embeds:
        return 0
    footer_text = message.embeds[0].footer.text
    if not footer_text:
        return 0
    match = ACL_PATTERN.search(footer_text)
    return int(match.group(1)) if match else 0


def encode_footer(acl: int) -> str:
    return f"acl:{acl} • {FOOTER_SIGNATURE}"


def build_footer_embed(acl: int) -> discord.Embed:
    embed = discord.Embed(description="\u200b")
    embed.set_footer(text=encode_footer(acl))
    return embed


def count_agent_bots(channel: Any, role_id: int) -> int:
    """Count bot members carrying the agent role that can view the channel."""
    count = 0
    for member in channel.guild.members:
        if not member.bot:
            continue
        if not any(role.id == role_id for role in member.roles):
            continue
        if channel.permissions_for(member).view_channel:
            count += 1
    return count


def compute_ceiling(channel: Any, settings: AclSettings) -> int:
    """Compute the chain-length ceiling for a channel.

    The ceiling shrinks as more agents share the channel and never drops
    below 1. A per-agent override can only lower it.
    """
    guild = getattr(channel, "guild", None)
    role_id = settings.agent_roles.get(guild.id) if guild is not None else None
    if guild is None or role_id is None:
        ceiling = settings.dm_ceiling
    else:
        bot_count = count_agent_bots(channel, role_id)
        ceiling = max(1, settings.base - bot_count)
        logger.debug(f"Guild {guild.name}: {bot_count} agent bots, ceiling {ceiling}")

    if settings.override is not None and settings.override < ceiling:
        logger.debug(f"Using agent-specific ceiling override {settings.override}")
        ceiling = settings.override
    return ceiling


def compute_effective_ceiling(
    ceiling: int, has_participated: bool, was_mentioned: bool, is_thread_author: bool
) -> int:
    # Multipliers are exclusive, not additive
    if was_mentioned or is_thread_author:
        return ceiling * 3
    if has_participated:
        return ceiling * 2
    return ceiling


async def walk_reply_chain(
    message: Any, self_id: int, max_depth: int = DEFAULT_MAX_CHAIN_DEPTH
) -> ChainInfo:
    """Walk the reply-parent pointers of a message looking for this agent.

    The walk is iterative, stops after ``max_depth`` ancestors, on a repeated
    id, or on the first fetch failure.
    """
    participated = False
    thread_author = False
    seen: set[int] = set()
    current = message
    depth = 0

    while depth < max_depth:
        reference = current.reference
        parent_id = reference.message_id if reference is not None else None
        if parent_id is None or parent_id in seen:
            break
        seen.add(parent_id)

        parent = reference.resolved if isinstance(reference.resolved, discord.Message) else None
        if parent is None:
            try:
                parent = await current.channel.fetch_message(parent_id)
            except discord.HTTPException as e:
                logger.debug(f"Stopping reply-chain walk at {parent_id}: {e}")
                break

        depth += 1
        if parent.author.id == self_id:
            participated = True
            if depth <= 2:
                thread_author = True
        current = parent

    return ChainInfo(participated=participated, thread_author=thread_author, depth=depth)


def is_mentioned(message: Any, self_id: int) -> bool:
    return any(user.id == self_id for user in message.mentions)


async def assess_message(message: Any, self_id: int, settings: AclSettings) -> AclAssessment:
    """Compute the current chain length and effective ceiling for a reply."""
    current = decode_acl(message)
    ceiling = compute_ceiling(message.channel, settings)
    chain = await walk_reply_chain(message, self_id, settings.max_chain_depth)
    effective = compute_effective_ceiling(
        ceiling, chain.participated, is_mentioned(message, self_id), chain.thread_author
    )
    logger.debug(
        f"ACL for message {message.id}: current={current} ceiling={ceiling} "
        f"effective={effective} chain_depth={chain.depth}"
    )
    return AclAssessment(current=current, ceiling=ceiling, effective_ceiling=effective)


def add_response_guidance(query: str, assessment: AclAssessment) -> str:
    """Append the agent-facing note matching the message's chain length."""
    if assessment.current == assessment.effective_ceiling:
        return query + REACTIONS_ONLY_MESSAGE
    if assessment.current > assessment.effective_ceiling or assessment.informational_only:
        return query + COURTESY_MESSAGE
    return query
