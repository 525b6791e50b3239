from contact_api.services.rate_limit import RateLimiter


class Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_blocks_after_threshold_and_recovers_after_window():
    clock = Clock()
    limiter = RateLimiter(max_requests=2, window_seconds=60, clock=clock)

    assert limiter.hit("1.2.3.4") == (True, 0)
    clock.now += 10
    assert limiter.hit("1.2.3.4") == (True, 0)
    allowed, retry_after = limiter.hit("1.2.3.4")
    assert not allowed
    assert retry_after == 50

    clock.now += 51
    assert limiter.hit("1.2.3.4")[0]


def test_clients_are_counted_separately():
    limiter = RateLimiter(max_requests=1, window_seconds=60, clock=Clock())
    assert limiter.hit("a")[0]
    assert not limiter.hit("a")[0]
    assert limiter.hit("b")[0]
