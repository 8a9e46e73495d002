"""Side-effect free filters applied to inbound Discord messages."""

from typing import Any

ERROR_SENTINELS = (
    "Q CLI failed with exit code",
    "Sorry, I encountered an error:",
)


def is_own_message(message: Any, self_id: int) -> bool:
    return message.author.id == self_id


def is_after_cursor(message: Any, cursor: int | str | None) -> bool:
    """True if the message is newer than the cursor (or there is no cursor).

    Discord snowflakes grow with time, so numeric order is creation order.
    """
    if cursor is None:
        return True
    return int(message.id) > int(cursor)


def is_relevant_in_shared_channel(message: Any, self_id: int) -> bool:
    """Filter the shared bot channel down to what concerns this agent.

    Humans are always relevant; other bots only when they mention us.
    """
    if message.author.id == self_id:
        return False
    if not message.author.bot:
        return True
    return any(user.id == self_id for user in message.mentions)


def is_error_shaped_response(text: str) -> bool:
    return any(sentinel in text for sentinel in ERROR_SENTINELS)


def describe_shared_channel_relevance(message: Any, self_id: int) -> str:
    """Human-readable reason used in debug traces."""
    if message.author.id == self_id:
        return "own bot message"
    if not message.author.bot:
        return "human message"
    if any(user.id == self_id for user in message.mentions):
        return "mentions bot"
    return "other bot message"
