import unittest
from unittest.mock import MagicMock

from listings.models import RateLimitConfig
from listings.rate_limiter import InMemoryRateLimiter, RedisRateLimiter, client_identifier

HOURLY = RateLimitConfig(max_requests=60, window_seconds=3600, key_prefix="upstream-api")


class _Clock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class InMemoryRateLimiterTests(unittest.TestCase):
    def test_sixty_first_call_in_window_is_denied(self):
        clock = _Clock(100.0)
        limiter = InMemoryRateLimiter(clock=clock)

        results = [limiter.check("1.2.3.4", HOURLY) for _ in range(60)]
        self.assertTrue(all(r.allowed for r in results))
        self.assertEqual(results[0].remaining, 59)
        self.assertEqual(results[-1].remaining, 0)

        denied = limiter.check("1.2.3.4", HOURLY)
        self.assertFalse(denied.allowed)
        self.assertEqual(denied.remaining, 0)
        self.assertEqual(denied.reset_at, 100.0 + 3600)

    def test_denied_call_does_not_move_the_window(self):
        clock = _Clock()
        limiter = InMemoryRateLimiter(clock=clock)
        config = RateLimitConfig(max_requests=1, window_seconds=10)
        limiter.check("id", config)
        clock.now = 5
        limiter.check("id", config)
        window = limiter.window_for("id", config)
        self.assertEqual(window.count, 1)
        self.assertEqual(window.window_reset_at, 10)

    def test_window_resets_after_expiry(self):
        clock = _Clock(0.0)
        limiter = InMemoryRateLimiter(clock=clock)
        for _ in range(61):
            limiter.check("id", HOURLY)

        clock.now = 3600.5
        result = limiter.check("id", HOURLY)

        self.assertTrue(result.allowed)
        self.assertEqual(result.remaining, 59)
        self.assertEqual(limiter.window_for("id", HOURLY).count, 1)

    def test_identities_and_configs_are_isolated(self):
        limiter = InMemoryRateLimiter(clock=_Clock())
        tight = RateLimitConfig(max_requests=1, window_seconds=60, key_prefix="general-api")
        self.assertTrue(limiter.check("a", tight).allowed)
        self.assertFalse(limiter.check("a", tight).allowed)
        self.assertTrue(limiter.check("b", tight).allowed)
        self.assertTrue(limiter.check("a", HOURLY).allowed)


class RedisRateLimiterTests(unittest.TestCase):
    def _client(self, count: int, ttl_ms: int):
        client = MagicMock()
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [True, count, ttl_ms]
        return client, pipe

    def test_counts_inside_one_transaction(self):
        client, pipe = self._client(count=1, ttl_ms=3_600_000)
        limiter = RedisRateLimiter(client, clock=_Clock(50.0))

        result = limiter.check("1.2.3.4", HOURLY)

        client.pipeline.assert_called_once_with(transaction=True)
        pipe.set.assert_called_once_with("upstream-api:1.2.3.4", 0, px=3_600_000, nx=True)
        pipe.incr.assert_called_once_with("upstream-api:1.2.3.4")
        self.assertTrue(result.allowed)
        self.assertEqual(result.remaining, 59)
        self.assertEqual(result.reset_at, 50.0 + 3600)

    def test_over_limit_is_denied(self):
        client, _ = self._client(count=61, ttl_ms=1000)
        limiter = RedisRateLimiter(client, clock=_Clock(0.0))
        result = limiter.check("id", HOURLY)
        self.assertFalse(result.allowed)
        self.assertEqual(result.remaining, 0)
        self.assertEqual(result.reset_at, 1.0)

    def test_store_failure_fails_open(self):
        client = MagicMock()
        client.pipeline.return_value.execute.side_effect = ConnectionError("down")
        limiter = RedisRateLimiter(client, clock=_Clock(0.0))
        self.assertTrue(limiter.check("id", HOURLY).allowed)


class ClientIdentifierTests(unittest.TestCase):
    def test_prefers_first_forwarded_hop(self):
        headers = {"X-Forwarded-For": " 10.0.0.1 , 10.0.0.2", "X-Real-IP": "10.0.0.3"}
        self.assertEqual(client_identifier(headers, "127.0.0.1"), "10.0.0.1")

    def test_falls_back_through_headers_and_socket(self):
        self.assertEqual(client_identifier({"CF-Connecting-IP": "9.9.9.9"}), "9.9.9.9")
        self.assertEqual(client_identifier({}, "127.0.0.1"), "127.0.0.1")
        self.assertEqual(client_identifier({}), "unknown")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
