import asyncio

from clinicops.main import SimpleRateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_requests_over_limit_are_refused():
    limiter = SimpleRateLimiter(limit=2, window_seconds=60, clock=FakeClock())

    async def scenario():
        return [await limiter.allow("10.0.0.1") for _ in range(3)]

    assert asyncio.run(scenario()) == [True, True, False]


def test_window_resets_after_expiry():
    clock = FakeClock()
    limiter = SimpleRateLimiter(limit=1, window_seconds=60, clock=clock)

    async def scenario():
        first = await limiter.allow("10.0.0.1")
        blocked = await limiter.allow("10.0.0.1")
        clock.now += 61
        return first, blocked, await limiter.allow("10.0.0.1")

    assert asyncio.run(scenario()) == (True, False, True)


def test_expired_clients_are_forgotten():
    clock = FakeClock()
    limiter = SimpleRateLimiter(limit=5, window_seconds=60, clock=clock)

    async def scenario():
        for octet in range(50):
            await limiter.allow(f"10.0.0.{octet}")
        clock.now += 61
        await limiter.allow("10.0.1.1")

    asyncio.run(scenario())

    assert len(limiter) == 1
