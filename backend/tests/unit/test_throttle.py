"""
Unit tests for ApiThrottle pacing and error backoff.

Sleep and clock are injected, so no test actually waits.
"""
import pytest

from exceptions import MediaItemNotFoundError
from throttle import ApiThrottle


class FakeTime:
    def __init__(self):
        self.now = 1000.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(round(seconds, 3))
        self.now += seconds


def make_throttle(fake: FakeTime, **kwargs) -> ApiThrottle:
    return ApiThrottle(sleep=fake.sleep, clock=fake.clock, **kwargs)


async def ok():
    return "ok"


async def boom():
    raise ConnectionError("service down")


async def missing():
    raise MediaItemNotFoundError("42")


class TestPacing:
    @pytest.mark.asyncio
    async def test_first_call_not_delayed(self):
        fake = FakeTime()
        throttle = make_throttle(fake, delay_ms=100)

        assert await throttle.call(ok) == "ok"
        assert fake.sleeps == []

    @pytest.mark.asyncio
    async def test_consecutive_calls_spaced(self):
        fake = FakeTime()
        throttle = make_throttle(fake, delay_ms=100)

        await throttle.call(ok)
        await throttle.call(ok)

        assert fake.sleeps == [0.1]

    @pytest.mark.asyncio
    async def test_zero_delay(self):
        fake = FakeTime()
        throttle = make_throttle(fake, delay_ms=0)

        for _ in range(3):
            await throttle.call(ok)

        assert fake.sleeps == []


class TestBackoff:
    @pytest.mark.asyncio
    async def test_backoff_after_consecutive_errors(self):
        fake = FakeTime()
        throttle = make_throttle(fake, delay_ms=0, max_consecutive_errors=3, error_backoff_seconds=30)

        for _ in range(3):
            with pytest.raises(ConnectionError):
                await throttle.call(boom)

        assert throttle.in_backoff is True
        assert await throttle.call(ok) == "ok"
        assert fake.sleeps == [30.0]
        assert throttle.consecutive_errors == 0
        assert throttle.in_backoff is False

    @pytest.mark.asyncio
    async def test_success_resets_error_count(self):
        fake = FakeTime()
        throttle = make_throttle(fake, delay_ms=0, max_consecutive_errors=2)

        with pytest.raises(ConnectionError):
            await throttle.call(boom)
        await throttle.call(ok)
        with pytest.raises(ConnectionError):
            await throttle.call(boom)

        assert throttle.in_backoff is False
        assert throttle.consecutive_errors == 1

    @pytest.mark.asyncio
    async def test_not_found_is_not_a_failure(self):
        fake = FakeTime()
        throttle = make_throttle(fake, delay_ms=0, max_consecutive_errors=1)

        with pytest.raises(MediaItemNotFoundError):
            await throttle.call(missing)

        assert throttle.consecutive_errors == 0
        assert throttle.in_backoff is False

    def test_from_settings(self):
        from config import MediarrSettings

        throttle = ApiThrottle.from_settings(MediarrSettings(api_delay_ms=250, max_consecutive_errors=7))

        assert throttle.delay == 0.25
        assert throttle.max_consecutive_errors == 7
