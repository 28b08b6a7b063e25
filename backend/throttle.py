"""
Pacing for external API calls during bulk passes.

Every call waits a fixed delay after the previous one. After
max_consecutive_errors failures in a row the throttle enters a cooldown:
the next call first waits out error_backoff_seconds, then the error count
resets and calls resume.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from exceptions import MediaItemNotFoundError, OrchestratorNotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Expected answers, not service failures
_NOT_FAILURES = (MediaItemNotFoundError, OrchestratorNotFoundError)


class ApiThrottle:
    def __init__(
        self,
        delay_ms: int = 100,
        max_consecutive_errors: int = 5,
        error_backoff_seconds: float = 30,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.delay = max(0, delay_ms) / 1000.0
        self.max_consecutive_errors = max_consecutive_errors
        self.error_backoff_seconds = error_backoff_seconds
        self._sleep = sleep
        self._clock = clock
        self._last_call: Optional[float] = None
        self._consecutive_errors = 0
        self._backoff_until: Optional[float] = None

    @classmethod
    def from_settings(cls, settings) -> "ApiThrottle":
        return cls(
            delay_ms=settings.api_delay_ms,
            max_consecutive_errors=settings.max_consecutive_errors,
            error_backoff_seconds=settings.error_backoff_seconds,
        )

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    @property
    def in_backoff(self) -> bool:
        return self._backoff_until is not None and self._clock() < self._backoff_until

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Await fn(*args, **kwargs) under the pacing and backoff rules."""
        await self._wait_turn()
        try:
            result = await fn(*args, **kwargs)
        except _NOT_FAILURES:
            self._consecutive_errors = 0
            raise
        except Exception:
            self._record_error()
            raise
        finally:
            self._last_call = self._clock()
        self._consecutive_errors = 0
        return result

    async def _wait_turn(self) -> None:
        if self._backoff_until is not None:
            remaining = self._backoff_until - self._clock()
            if remaining > 0:
                logger.info(f"[THROTTLE] Backing off for {remaining:.1f}s after {self._consecutive_errors} consecutive errors")
                await self._sleep(remaining)
            self._backoff_until = None
            self._consecutive_errors = 0

        if self._last_call is not None and self.delay > 0:
            wait = self.delay - (self._clock() - self._last_call)
            if wait > 0:
                await self._sleep(wait)

    def _record_error(self) -> None:
        self._consecutive_errors += 1
        if self._consecutive_errors >= self.max_consecutive_errors and self._backoff_until is None:
            self._backoff_until = self._clock() + self.error_backoff_seconds
            logger.warning(
                f"[THROTTLE] {self._consecutive_errors} consecutive API errors, "
                f"pausing calls for {self.error_backoff_seconds}s"
            )

    def reset(self) -> None:
        self._consecutive_errors = 0
        self._backoff_until = None
        self._last_call = None
