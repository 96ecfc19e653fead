"""
Unit tests for InMemoryRateLimiter: fixed window per identity, injected clock.
"""
import threading
import unittest

from app.core.rate_limit import InMemoryRateLimiter, rate_limiter_from_config


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class RateLimiterTests(unittest.TestCase):
    def setUp(self):
        self.clock = _Clock()
        self.limiter = InMemoryRateLimiter(max_requests=3, window_seconds=60, clock=self.clock)

    def test_allows_up_to_limit(self):
        decisions = [self.limiter.check_and_consume("a") for _ in range(4)]
        self.assertEqual([d.allowed for d in decisions], [True, True, True, False])
        self.assertEqual([d.remaining for d in decisions], [2, 1, 0, 0])

    def test_identities_are_independent(self):
        for _ in range(3):
            self.limiter.check_and_consume("a")
        self.assertFalse(self.limiter.check_and_consume("a").allowed)
        self.assertTrue(self.limiter.check_and_consume("b").allowed)

    def test_window_reset(self):
        for _ in range(3):
            self.limiter.check_and_consume("a")
        self.assertFalse(self.limiter.check_and_consume("a").allowed)

        self.clock.now += 60
        decision = self.limiter.check_and_consume("a")
        self.assertTrue(decision.allowed)
        self.assertEqual(decision.remaining, 2)
        self.assertEqual(decision.reset_at, self.clock.now + 60)

    def test_reset_clears_state(self):
        for _ in range(3):
            self.limiter.check_and_consume("a")
        self.limiter.reset("a")
        self.assertTrue(self.limiter.check_and_consume("a").allowed)

    def test_concurrent_consumers_never_exceed_limit(self):
        limiter = InMemoryRateLimiter(max_requests=50, window_seconds=60, clock=self.clock)
        allowed = []
        lock = threading.Lock()

        def worker():
            for _ in range(20):
                decision = limiter.check_and_consume("shared")
                with lock:
                    allowed.append(decision.allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sum(allowed), 50)

    def test_from_config(self):
        limiter = rate_limiter_from_config({"rate_limit": {"max_requests": 7, "window_seconds": 5}})
        self.assertEqual(limiter.max_requests, 7)
        self.assertEqual(limiter.window_seconds, 5.0)


if __name__ == "__main__":
    unittest.main()
