"""Interpretation of raw agent output: directives, reactions, ACL blocking."""

import enum
import logging
import re
from dataclasses import dataclass

from .acl import AclAssessment
from .classifier import is_error_shaped_response

logger = logging.getLogger(__name__)

NO_RESPONSE = "NO_RESPONSE"
REACTION_PREFIX = "REACTION:"

# Common emoji names mapped to Unicode; anything else is passed through as a
# custom emoji name.
EMOJI_MAP = {
    "thumbsup": "👍",
    "thumbsdown": "👎",
    "heart": "❤️",
    "heart_eyes": "😍",
    "100": "💯",
    "fire": "🔥",
    "eyes": "👀",
    "thinking": "🤔",
    "tada": "🎉",
    "rocket": "🚀",
    "ship": "🚢",
    "cruise_ship": "🛳️",
    "star": "⭐",
    "check": "✅",
    "x": "❌",
    "wave": "👋",
    "waves": "👋",
    "clap": "👏",
    "pray": "🙏",
    "muscle": "💪",
    "brain": "🧠",
    "bulb": "💡",
    "warning": "⚠️",
    "question": "❓",
    "exclamation": "❗",
    "laughing": "😂",
    "smile": "😊",
    "grin": "😁",
    "joy": "😂",
    "rofl": "🤣",
    "sunglasses": "😎",
    "sob": "😭",
    "scream": "😱",
    "flushed": "😳",
    "shrug": "🤷",
}

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_UNOPENED_THINK = re.compile(r"^.*?</think>\s*", re.IGNORECASE | re.DOTALL)
_THINK_TAG = re.compile(r"</?think>", re.IGNORECASE)


class OutcomeKind(enum.Enum):
    EMPTY = "empty"
    NO_RESPONSE = "no_response"
    REACTION = "reaction"
    BLOCKED = "blocked"
    ERROR = "error"
    TEXT = "text"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    text: str = ""
    emoji: str | None = None

    @property
    def advances_cursor(self) -> bool:
        """Whether the message counts as processed without any delivery."""
        return self.kind in (OutcomeKind.NO_RESPONSE, OutcomeKind.REACTION, OutcomeKind.BLOCKED)


def strip_think_tags(content: str) -> str:
    """Remove ``<think>`` reasoning blocks, including ones missing an opening tag."""
    result = _THINK_BLOCK.sub("", content)
    result = _UNOPENED_THINK.sub("", result)
    result = _THINK_TAG.sub("", result)
    return result.strip()


def parse_reaction(directive: str) -> str:
    """Map the payload of a ``REACTION:`` directive to an emoji."""
    name = directive[len(REACTION_PREFIX) :] if directive.startswith(REACTION_PREFIX) else directive
    name = name.strip()
    if name.startswith(":"):
        name = name[1:]
    if name.endswith(":"):
        name = name[:-1]
    return EMOJI_MAP.get(name.lower(), name)


def interpret_response(raw: str | None, assessment: AclAssessment | None = None) -> Outcome:
    """Classify agent output for one message.

    Args:
        raw: Agent output text, None if the agent produced nothing
        assessment: ACL state of the triggering message; None skips ceiling enforcement

    Returns:
        The outcome the caller should act on
    """
    text = strip_think_tags(raw or "")
    if not text:
        return Outcome(OutcomeKind.EMPTY)

    if text == NO_RESPONSE:
        return Outcome(OutcomeKind.NO_RESPONSE)

    if text.startswith(REACTION_PREFIX):
        return Outcome(OutcomeKind.REACTION, emoji=parse_reaction(text))

    if is_error_shaped_response(text):
        return Outcome(OutcomeKind.ERROR, text=text)

    if assessment is not None and assessment.reactions_only:
        logger.info(
            f"Blocking text response at ACL {assessment.current} "
            f"(ceiling {assessment.effective_ceiling}, reactions only)"
        )
        return Outcome(OutcomeKind.BLOCKED, text=text)

    return Outcome(OutcomeKind.TEXT, text=text)
