import unittest
from unittest.mock import MagicMock

from listings.cache import ResponseCache, cache_key
from listings.errors import ClientRateLimited, CredentialError, NetworkError, UpstreamError
from listings.fetcher import ChannelFetcher
from listings.models import AccessCredential, RateLimitConfig, RateLimitResult, SortMode, SourceQuery, TimeWindow

API_BASE = "https://api.example.test"
RATE = RateLimitConfig(max_requests=60, window_seconds=3600, key_prefix="upstream-api")


def _listing(*ids, after=None):
    return {
        "data": {
            "after": after,
            "children": [{"data": {"id": i, "title": i, "subreddit": "pics", "url": f"https://i.redd.it/{i}.jpg"}} for i in ids],
        }
    }


class ChannelFetcherTests(unittest.TestCase):
    def setUp(self) -> None:
        self.http = MagicMock()
        self.credentials = MagicMock()
        self.credentials.get_token.return_value = AccessCredential(token="tok", expires_at=float("inf"))
        self.rate_limiter = MagicMock()
        self.rate_limiter.check.return_value = RateLimitResult(True, 59, 0.0)
        self.cache = ResponseCache(max_entries=10, default_ttl=600)
        self.fetcher = ChannelFetcher(
            http=self.http,
            credentials=self.credentials,
            rate_limiter=self.rate_limiter,
            cache=self.cache,
            rate_config=RATE,
            api_base=API_BASE + "/",
            cache_ttl=300,
        )

    def test_fetch_calls_upstream_and_caches(self):
        self.http.get_json.return_value = (200, _listing("a", "b", after="t3_b"))
        query = SourceQuery(channel="pics", page_size=2)

        result = self.fetcher.fetch(query, identity="1.2.3.4")

        self.assertEqual([p.post_id for p in result.posts], ["a", "b"])
        self.assertEqual(result.next_cursor, "t3_b")
        self.assertFalse(result.from_cache)
        self.rate_limiter.check.assert_called_once_with("1.2.3.4", RATE)
        url = self.http.get_json.call_args.args[0]
        kwargs = self.http.get_json.call_args.kwargs
        self.assertEqual(url, "https://api.example.test/r/pics/hot.json")
        self.assertEqual(kwargs["params"], {"limit": 2, "raw_json": 1})
        self.assertEqual(kwargs["headers"], {"Authorization": "bearer tok"})
        self.assertTrue(self.cache.has(cache_key("pics", SortMode.HOT)))

    def test_top_query_sends_window_and_cursor(self):
        self.http.get_json.return_value = (200, _listing("a"))
        query = SourceQuery(channel="pics", sort_mode=SortMode.TOP, time_window=TimeWindow.WEEK, cursor="t3_x")
        self.fetcher.fetch(query)
        kwargs = self.http.get_json.call_args.kwargs
        self.assertEqual(kwargs["params"]["t"], "week")
        self.assertEqual(kwargs["params"]["after"], "t3_x")

    def test_cache_hit_skips_rate_limit_and_network(self):
        self.http.get_json.return_value = (200, _listing("a", after="c1"))
        query = SourceQuery(channel="pics")
        first = self.fetcher.fetch(query)

        second = self.fetcher.fetch(query)

        self.assertEqual(first, second)
        self.assertTrue(second.from_cache)
        self.assertEqual(self.http.get_json.call_count, 1)
        self.assertEqual(self.rate_limiter.check.call_count, 1)

    def test_rate_limit_denial_happens_before_network(self):
        self.rate_limiter.check.return_value = RateLimitResult(False, 0, 1234.0)
        with self.assertRaises(ClientRateLimited) as ctx:
            self.fetcher.fetch(SourceQuery(channel="pics"), identity="1.2.3.4")
        self.assertEqual(ctx.exception.reset_at, 1234.0)
        self.credentials.get_token.assert_not_called()
        self.http.get_json.assert_not_called()

    def test_not_found_raises_upstream_error(self):
        self.http.get_json.return_value = (404, {"message": "Not Found", "reason": "banned"})
        with self.assertRaises(UpstreamError) as ctx:
            self.fetcher.fetch(SourceQuery(channel="gone"))
        self.assertEqual(ctx.exception.status, 404)
        self.assertEqual(ctx.exception.channel, "gone")
        self.assertIn("banned", str(ctx.exception))
        self.assertEqual(len(self.cache), 0)

    def test_server_error_raises_upstream_error(self):
        self.http.get_json.return_value = (500, None)
        with self.assertRaises(UpstreamError) as ctx:
            self.fetcher.fetch(SourceQuery(channel="pics"))
        self.assertEqual(ctx.exception.status, 500)

    def test_unauthorized_invalidates_credential(self):
        self.http.get_json.return_value = (401, {"message": "Unauthorized"})
        with self.assertRaises(UpstreamError):
            self.fetcher.fetch(SourceQuery(channel="pics"))
        self.credentials.invalidate.assert_called_once_with()

    def test_timeout_propagates_as_network_error(self):
        self.http.get_json.side_effect = NetworkError("Timed out", channel="pics", timeout=True)
        with self.assertRaises(NetworkError) as ctx:
            self.fetcher.fetch(SourceQuery(channel="pics"))
        self.assertTrue(ctx.exception.timeout)
        self.assertEqual(ctx.exception.http_status, 504)

    def test_credential_failure_propagates(self):
        self.credentials.get_token.side_effect = CredentialError("no secret")
        with self.assertRaises(CredentialError):
            self.fetcher.fetch(SourceQuery(channel="pics"))
        self.http.get_json.assert_not_called()


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
