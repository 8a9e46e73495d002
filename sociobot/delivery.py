"""Delivery of agent replies to Discord in protocol-sized chunks."""

import logging
from pathlib import Path
from typing import Any

import discord

from .acl import build_footer_embed
from .interpreter import strip_think_tags

logger = logging.getLogger(__name__)

DISCORD_MESSAGE_LIMIT = 2000
# Room for the "(i/n) " prefix carried by every chunk of a multi-part reply
CHUNK_PREFIX_RESERVE = 12


class DeliveryError(Exception):
    """Raised when a reply chunk could not be sent."""


def split_message(content: str, limit: int = DISCORD_MESSAGE_LIMIT) -> list[str]:
    """Split text into chunks of at most ``limit`` characters.

    Prefers a paragraph break in the last half of the window, then a line
    break or sentence end in the last 30%, then a word boundary in the last
    20%, and only then cuts hard. Concatenating the chunks gives back the
    input unchanged.
    """
    if len(content) <= limit:
        return [content]

    chunks: list[str] = []
    remaining = content
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break

        window = remaining[: limit + 1]
        split_index = limit

        paragraph_break = window.rfind("\n\n")
        line_break = window.rfind("\n")
        sentence_end = window.rfind(". ")
        word_boundary = window.rfind(" ")
        if paragraph_break > limit * 0.5:
            split_index = paragraph_break + 2
        elif line_break > limit * 0.7:
            split_index = line_break + 1
        elif sentence_end > limit * 0.7:
            split_index = sentence_end + 2
        elif word_boundary > limit * 0.8:
            split_index = word_boundary + 1
        split_index = min(split_index, limit)

        chunks.append(remaining[:split_index])
        remaining = remaining[split_index:]

    return chunks


def chunk_reply(content: str, limit: int = DISCORD_MESSAGE_LIMIT) -> list[str]:
    """Split a reply and number the parts so each sent message fits the limit."""
    if len(content) <= limit:
        return [content]
    chunks = split_message(content, limit - CHUNK_PREFIX_RESERVE)
    total = len(chunks)
    return [f"({i}/{total}) {chunk}" for i, chunk in enumerate(chunks, start=1)]


async def deliver_reply(
    message: Any,
    content: str,
    acl: int,
    audio_path: str | Path | None = None,
) -> list[Any]:
    """Send a reply to ``message``, first chunk carrying the ACL footer.

    Args:
        message: The triggering Discord message
        content: Reply text (think-tags are stripped again here)
        acl: Chain length to record in the footer, i.e. the triggering ACL + 1
        audio_path: Optional audio file attached to the first chunk

    Returns:
        The sent Discord messages

    Raises:
        DeliveryError: If any chunk fails; later chunks are not attempted
    """
    parts = chunk_reply(strip_think_tags(content))
    sent: list[Any] = []

    for i, part in enumerate(parts):
        try:
            if i == 0:
                kwargs: dict[str, Any] = {"embed": build_footer_embed(acl), "mention_author": False}
                if audio_path:
                    kwargs["file"] = discord.File(str(audio_path))
                sent.append(await message.reply(part, **kwargs))
            else:
                sent.append(await message.reply(part, mention_author=False))
        except (discord.HTTPException, OSError) as e:
            raise DeliveryError(f"Failed to send message chunk {i + 1}/{len(parts)}: {e}") from e
        logger.debug(f"Sent chunk {i + 1}/{len(parts)} for message {message.id}")

    return sent
