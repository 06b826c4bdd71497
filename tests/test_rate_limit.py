from snapapi.rate_limit import RateLimiter


class FakeMonotonic:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def test_eleventh_call_in_window_is_rejected():
    clock = FakeMonotonic()
    limiter = RateLimiter(max_calls=10, window_seconds=60, clock=clock)

    results = [limiter.allow("key") for _ in range(11)]

    assert results.count(True) == 10
    assert results[-1] is False


def test_rejected_calls_keep_counting_until_window_rolls():
    clock = FakeMonotonic()
    limiter = RateLimiter(max_calls=10, window_seconds=60, clock=clock)
    for _ in range(11):
        limiter.allow("key")

    clock.now += 30
    assert limiter.allow("key") is False
    assert limiter.retry_after("key") == 30

    clock.now += 31
    assert limiter.allow("key") is True


def test_windows_are_per_key():
    clock = FakeMonotonic()
    limiter = RateLimiter(max_calls=1, window_seconds=60, clock=clock)

    assert limiter.allow("a") is True
    assert limiter.allow("a") is False
    assert limiter.allow("b") is True
    assert limiter.retry_after("unknown") == 0
