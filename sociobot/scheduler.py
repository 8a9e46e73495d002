"""Deferred processing for low-priority messages (bots, slowed-down channels)."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_DELAY_MS = 17000
MAX_JITTER_MS = 3000


def low_priority_delay(
    slowdown_seconds: int,
    default_delay_ms: int = DEFAULT_MESSAGE_DELAY_MS,
    jitter: Callable[[], float] = random.random,
) -> float:
    """Return the delay in seconds before a low-priority message is handled.

    Channels with a slowdown wait one second longer than the slowdown; all
    others use the configured default. Up to 3s of jitter de-synchronizes
    agents reacting to the same trigger.
    """
    base_ms = (slowdown_seconds + 1) * 1000 if slowdown_seconds > 0 else default_delay_ms
    return (base_ms + jitter() * MAX_JITTER_MS) / 1000


class LowPriorityScheduler:
    """Runs a callback for each scheduled message after its delay.

    Waiting happens in background tasks so other events keep flowing.
    Pending work is lost on shutdown; the next backlog scan picks it up.
    """

    def __init__(self) -> None:
        self._pending: dict[int, asyncio.Task] = {}

    def schedule(
        self,
        message: Any,
        delay: float,
        callback: Callable[[Any], Awaitable[None]],
    ) -> None:
        """Schedule ``callback(message)`` after ``delay`` seconds.

        Args:
            message: Discord message to process later
            delay: Seconds to wait
            callback: Async handler invoked with the message
        """
        if message.id in self._pending:
            logger.debug(f"Message {message.id} already scheduled")
            return
        logger.debug(f"Delaying processing of message {message.id} by {delay:.1f}s")
        self._pending[message.id] = asyncio.create_task(self._delayed(message, delay, callback))

    async def _delayed(
        self,
        message: Any,
        delay: float,
        callback: Callable[[Any], Awaitable[None]],
    ) -> None:
        try:
            await asyncio.sleep(delay)
            await callback(message)
        except asyncio.CancelledError:
            logger.debug(f"Delayed processing cancelled for message {message.id}")
            raise
        except Exception as e:
            logger.error(f"Error in delayed processing of message {message.id}: {e}", exc_info=True)
        finally:
            self._pending.pop(message.id, None)

    def is_pending(self, message_id: int) -> bool:
        return message_id in self._pending

    def pending_count(self) -> int:
        return len(self._pending)

    async def cancel_all(self) -> None:
        """Cancel all pending deferred messages."""
        tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
        logger.debug("Cancelled all pending low-priority messages")
