from buildfleet.backoff import BackoffState


def test_doubles_until_capped():
    backoff = BackoffState(min=1, max=60)
    delays = [backoff.failure() for _ in range(8)]
    assert delays == [1, 2, 4, 8, 16, 32, 60, 60]


def test_non_decreasing_across_failures():
    backoff = BackoffState(min=0.5, max=10)
    delays = [backoff.failure() for _ in range(20)]
    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert max(delays) == 10


def test_reset_returns_to_min():
    backoff = BackoffState(min=1, max=60)
    for _ in range(5):
        backoff.failure()
    backoff.reset()
    assert backoff.current == 1
    assert backoff.failure() == 1
