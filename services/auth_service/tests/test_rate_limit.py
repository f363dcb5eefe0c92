from services.auth_service.app.rate_limit import SlidingWindowLimiter


class TickingClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_limiter_refuses_requests_over_the_limit() -> None:
    clock = TickingClock()
    limiter = SlidingWindowLimiter(2, window_seconds=60, clock=clock)

    assert limiter.allow("10.0.0.1")
    assert limiter.allow("10.0.0.1")
    assert not limiter.allow("10.0.0.1")
    assert limiter.allow("10.0.0.2")

    clock.now += 61
    assert limiter.allow("10.0.0.1")


def test_limiter_forgets_idle_clients() -> None:
    clock = TickingClock()
    limiter = SlidingWindowLimiter(5, window_seconds=60, clock=clock)

    for index in range(50):
        limiter.allow(f"10.0.1.{index}")
    assert limiter.tracked_clients == 50

    clock.now += 61
    limiter.allow("10.0.2.1")
    assert limiter.tracked_clients == 1


def test_limiter_keeps_clients_still_inside_the_window() -> None:
    clock = TickingClock()
    limiter = SlidingWindowLimiter(5, window_seconds=60, clock=clock)

    limiter.allow("10.0.0.1")
    clock.now += 30
    limiter.allow("10.0.0.2")
    clock.now += 31
    limiter.allow("10.0.0.3")

    assert limiter.tracked_clients == 2
