"""Guards around agent invocation: failure breaker, concurrency gate, host load."""

import asyncio
import contextlib
import logging
import os
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_MAX_FAILURES = 5
DEFAULT_MAX_CONCURRENT = 3
DEFAULT_MAX_LOAD_AVERAGE = 21.0
DEFAULT_LOAD_CHECK_INTERVAL = 30.0


class CircuitBreaker:
    """Counts consecutive agent failures and trips at a fixed threshold.

    Tripping is terminal: the ``on_trip`` callback is expected to shut the
    process down with a non-zero exit code.
    """

    def __init__(
        self,
        max_failures: int = DEFAULT_MAX_FAILURES,
        on_trip: Callable[[str], None] | None = None,
    ):
        self.max_failures = max_failures
        self.consecutive_failures = 0
        self.on_trip = on_trip
        self.tripped = False

    @property
    def is_open(self) -> bool:
        return self.consecutive_failures >= self.max_failures

    def record_success(self) -> None:
        if self.consecutive_failures:
            logger.debug(f"Resetting breaker after {self.consecutive_failures} failures")
        self.consecutive_failures = 0

    def record_failure(self, context: str) -> bool:
        """Count one failure; trip if the threshold is reached.

        Returns:
            True if the breaker is now open
        """
        self.consecutive_failures += 1
        logger.warning(
            f"Agent failure ({self.consecutive_failures}/{self.max_failures}) in {context}"
        )
        if self.is_open:
            self.trip(
                f"{self.consecutive_failures} consecutive agent failures (last in {context})"
            )
        return self.is_open

    def force_open(self, reason: str) -> None:
        self.consecutive_failures = max(self.consecutive_failures, self.max_failures)
        self.trip(reason)

    def check(self, context: str) -> bool:
        """Return True if invocation may proceed; trip and return False otherwise."""
        if not self.is_open:
            return True
        logger.error(f"Circuit breaker open ({self.consecutive_failures} failures), {context}")
        self.trip(f"{self.consecutive_failures} consecutive agent failures")
        return False

    def trip(self, reason: str) -> None:
        if self.tripped:
            return
        self.tripped = True
        logger.error(f"Circuit breaker triggered: {reason} - exiting")
        if self.on_trip:
            self.on_trip(reason)


class InvocationGate:
    """Caps simultaneous agent invocations; requests over the cap are dropped."""

    def __init__(self, max_concurrent: int = DEFAULT_MAX_CONCURRENT):
        self.max_concurrent = max_concurrent
        self.active = 0

    def try_enter(self) -> bool:
        if self.active >= self.max_concurrent:
            logger.warning(f"Process limit reached: {self.active} active agent invocations")
            return False
        self.active += 1
        return True

    def leave(self) -> None:
        self.active = max(0, self.active - 1)


class LoadMonitor:
    """Samples the host load average and opens the breaker when it is too high."""

    def __init__(
        self,
        breaker: CircuitBreaker,
        max_load: float = DEFAULT_MAX_LOAD_AVERAGE,
        interval: float = DEFAULT_LOAD_CHECK_INTERVAL,
        load_reader: Callable[[], float] | None = None,
    ):
        self.breaker = breaker
        self.max_load = max_load
        self.interval = interval
        self.load_reader = load_reader or (lambda: os.getloadavg()[0])
        self._task: asyncio.Task | None = None

    def check(self) -> bool:
        """Sample once. Returns False if the load is over the ceiling."""
        try:
            load = self.load_reader()
        except OSError as e:
            logger.warning(f"Load check failed: {e}")
            return True
        if load > self.max_load:
            logger.error(f"HIGH LOAD DETECTED: {load} - exiting to reduce system load")
            self.breaker.force_open(f"host load average {load} > {self.max_load}")
            return False
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not self.check():
                return

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
