from __future__ import annotations

from skillgate.hub.rate_limit import RateLimiter

WINDOW_MS = 60_000


class Clock:
    def __init__(self, now: int = 1_760_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


def test_limit_allows_n_then_rejects_with_reset_time():
    clock = Clock()
    limiter = RateLimiter(clock=clock)

    decisions = [limiter.hit("register:abc", 3, WINDOW_MS) for _ in range(3)]
    assert [d.allowed for d in decisions] == [True, True, True]
    assert [d.remaining for d in decisions] == [2, 1, 0]

    clock.now += 1_000
    rejected = limiter.hit("register:abc", 3, WINDOW_MS)
    assert not rejected.allowed
    assert rejected.remaining == 0
    assert rejected.reset_at == decisions[0].reset_at


def test_window_resets_after_expiry():
    clock = Clock()
    limiter = RateLimiter(clock=clock)
    for _ in range(2):
        limiter.hit("k", 2, WINDOW_MS)
    assert not limiter.hit("k", 2, WINDOW_MS).allowed

    clock.now += WINDOW_MS + 1
    fresh = limiter.hit("k", 2, WINDOW_MS)
    assert fresh.allowed
    assert fresh.remaining == 1
    assert fresh.reset_at == clock.now + WINDOW_MS


def test_keys_are_counted_independently():
    limiter = RateLimiter(clock=Clock())
    assert limiter.hit("a", 1, WINDOW_MS).allowed
    assert not limiter.hit("a", 1, WINDOW_MS).allowed
    assert limiter.hit("b", 1, WINDOW_MS).allowed


def test_counts_survive_new_limiter_instances():
    clock = Clock()
    RateLimiter(clock=clock).hit("shared", 2, WINDOW_MS)
    RateLimiter(clock=clock).hit("shared", 2, WINDOW_MS)
    assert not RateLimiter(clock=clock).hit("shared", 2, WINDOW_MS).allowed
