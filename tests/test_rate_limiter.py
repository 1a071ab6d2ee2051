from __future__ import annotations

import threading

import pytest

from logagg.api.services.rate_limiter import SlidingWindowRateLimiter


def test_fourth_call_in_window_is_rejected_then_admitted_after_window(monotonic):
    limiter = SlidingWindowRateLimiter(limit=3, window_seconds=1.0, clock=monotonic)

    results = []
    for _ in range(4):
        results.append(limiter.allow("key-1"))
        monotonic.advance(0.1)
    assert results == [True, True, True, False]

    monotonic.advance(1.0)
    assert limiter.allow("key-1") is True


def test_window_slides_rather_than_resets(monotonic):
    limiter = SlidingWindowRateLimiter(limit=2, window_seconds=10, clock=monotonic)
    assert limiter.allow("k")
    monotonic.advance(6)
    assert limiter.allow("k")
    assert not limiter.allow("k")

    # The first admission leaves the window at t=10; the second is still live.
    monotonic.advance(4)
    assert limiter.allow("k")
    assert not limiter.allow("k")


def test_rejected_calls_are_not_recorded(monotonic):
    limiter = SlidingWindowRateLimiter(limit=1, window_seconds=5, clock=monotonic)
    assert limiter.allow("k")
    for _ in range(10):
        monotonic.advance(0.1)
        assert not limiter.allow("k")

    monotonic.advance(4.5)
    assert limiter.allow("k")


def test_identities_are_independent(monotonic):
    limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60, clock=monotonic)
    assert limiter.allow("a")
    assert not limiter.allow("a")
    assert limiter.allow("b")


def test_idle_identities_are_dropped(monotonic):
    limiter = SlidingWindowRateLimiter(limit=5, window_seconds=1, clock=monotonic)
    for i in range(100):
        limiter.allow(f"id-{i}")
    assert limiter.tracked_identities() == 100

    monotonic.advance(2)
    assert limiter.prune() == 100
    assert limiter.tracked_identities() == 0


def test_idle_identities_are_swept_by_later_calls(monotonic):
    limiter = SlidingWindowRateLimiter(limit=3, window_seconds=1, clock=monotonic)
    for i in range(1000):
        limiter.allow(f"id-{i}")
    assert limiter.tracked_identities() == 1000

    monotonic.advance(10)
    assert limiter.allow("other")
    assert limiter.tracked_identities() == 1


def test_live_identities_survive_the_sweep(monotonic):
    limiter = SlidingWindowRateLimiter(limit=1, window_seconds=1, clock=monotonic)
    limiter.allow("a")
    monotonic.advance(0.5)
    limiter.allow("b")
    monotonic.advance(0.6)

    # "a" is idle at this point, "b" still has a live admission.
    assert limiter.allow("c")
    assert limiter.tracked_identities() == 2
    assert not limiter.allow("b")


def test_retry_after_counts_down_to_oldest_admission(monotonic):
    limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60, clock=monotonic)
    assert limiter.retry_after("k") == 0.0
    limiter.allow("k")
    monotonic.advance(15)
    assert limiter.retry_after("k") == pytest.approx(45.0)


@pytest.mark.parametrize("limit, window", [(0, 1), (1, 0), (1, -1)])
def test_invalid_configuration_is_rejected(limit, window):
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(limit=limit, window_seconds=window)


def test_concurrent_callers_never_exceed_the_limit():
    limiter = SlidingWindowRateLimiter(limit=50, window_seconds=60)
    admitted = []
    lock = threading.Lock()

    def _worker():
        for _ in range(20):
            ok = limiter.allow("shared")
            with lock:
                admitted.append(ok)

    threads = [threading.Thread(target=_worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(admitted) == 50
