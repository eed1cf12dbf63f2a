from __future__ import annotations

import asyncio

from labeleval.jobs.llm_throttle import LlmThrottle


class FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_rate_limit_backoff_starts_at_floor_doubles_and_caps():
    throttle = LlmThrottle(backoff_floor_ms=1000, backoff_cap_ms=60000)

    observed = [throttle.register_rate_limit() for _ in range(8)]

    assert observed == [1000, 2000, 4000, 8000, 16000, 32000, 60000, 60000]


def test_backoff_decays_after_each_wait():
    clock = FakeClock()
    throttle = LlmThrottle(backoff_decay_ms=100, clock=clock, sleep=clock.sleep)
    throttle.register_rate_limit()

    asyncio.run(throttle.wait_for_backoff())
    asyncio.run(throttle.wait_for_backoff())

    assert clock.sleeps == [1.0, 0.9]
    assert throttle.backoff_ms == 800


def test_backoff_wait_is_noop_when_idle():
    clock = FakeClock()
    throttle = LlmThrottle(clock=clock, sleep=clock.sleep)

    asyncio.run(throttle.wait_for_backoff())

    assert clock.sleeps == []


def test_cooldown_waits_out_remaining_window_after_error():
    clock = FakeClock()
    throttle = LlmThrottle(error_delay_ms=5000, clock=clock, sleep=clock.sleep)

    asyncio.run(throttle.wait_for_cooldown())
    assert clock.sleeps == []

    throttle.record_error()
    clock.now += 2.0
    assert throttle.cooldown_remaining_ms() == 3000

    asyncio.run(throttle.wait_for_cooldown())
    assert clock.sleeps == [3.0]
    assert throttle.cooldown_remaining_ms() == 0


def test_reset_clears_shared_state():
    throttle = LlmThrottle()
    throttle.register_rate_limit()
    throttle.record_error()

    throttle.reset()

    assert throttle.backoff_ms == 0
    assert throttle.cooldown_remaining_ms() == 0
