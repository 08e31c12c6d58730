import json
import unittest
from unittest.mock import MagicMock

from listings.cache import RedisResponseCache, ResponseCache, cache_key
from listings.models import FetchResult, NormalizedPost, SortMode, TimeWindow


class _Clock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _make_result(post_id: str, cursor=None) -> FetchResult:
    post = NormalizedPost(
        title=f"post {post_id}",
        post_id=post_id,
        channel="pics",
        media_urls=[f"https://i.redd.it/{post_id}.jpg"],
    )
    return FetchResult(posts=[post], next_cursor=cursor)


class CacheKeyTests(unittest.TestCase):
    def test_identical_queries_share_a_key(self):
        first = cache_key("Pics", SortMode.HOT, None, None)
        second = cache_key("pics", "hot")
        self.assertEqual(first, second)
        self.assertEqual(first, "listings:pics:hot:none:initial")

    def test_window_and_cursor_are_part_of_the_key(self):
        key = cache_key("pics", SortMode.TOP, TimeWindow.WEEK, "t3_abc")
        self.assertEqual(key, "listings:pics:top:week:t3_abc")
        self.assertNotEqual(key, cache_key("pics", SortMode.TOP, TimeWindow.DAY, "t3_abc"))


class ResponseCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock()

    def test_set_then_get_returns_value(self):
        cache = ResponseCache(max_entries=4, default_ttl=60, clock=self.clock)
        value = _make_result("a", "c1")
        cache.set("k", value, 30)
        self.assertEqual(cache.get("k"), value)

    def test_repeated_gets_within_ttl_return_equal_values(self):
        cache = ResponseCache(max_entries=4, default_ttl=60, clock=self.clock)
        cache.set("k", _make_result("a"))
        first = cache.get("k")
        self.clock.advance(59)
        second = cache.get("k")
        self.assertEqual(first, second)
        self.assertEqual(cache.hits, 2)

    def test_expired_entry_is_evicted_on_get(self):
        cache = ResponseCache(max_entries=4, default_ttl=60, clock=self.clock)
        cache.set("k", _make_result("a"), ttl=10)
        self.clock.advance(10.5)
        self.assertIsNone(cache.get("k"))
        self.assertEqual(len(cache), 0)

    def test_entry_is_still_valid_at_exact_expiry(self):
        cache = ResponseCache(max_entries=4, default_ttl=60, clock=self.clock)
        cache.set("k", "v", ttl=10)
        self.clock.advance(10)
        self.assertEqual(cache.get("k"), "v")

    def test_evicts_least_recently_accessed_entry_at_capacity(self):
        cache = ResponseCache(max_entries=3, default_ttl=600, clock=self.clock)
        cache.set("a", 1)
        self.clock.advance(1)
        cache.set("b", 2)
        self.clock.advance(1)
        cache.set("c", 3)
        self.clock.advance(1)
        # Touch "a" so "b" becomes the least recently accessed.
        cache.get("a")
        self.clock.advance(1)

        cache.set("d", 4)

        self.assertIsNone(cache.get("b"))
        self.assertEqual(cache.get("a"), 1)
        self.assertEqual(cache.get("c"), 3)
        self.assertEqual(cache.get("d"), 4)
        self.assertEqual(len(cache), 3)

    def test_overwriting_existing_key_does_not_evict(self):
        cache = ResponseCache(max_entries=2, default_ttl=600, clock=self.clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        self.assertEqual(cache.get("a"), 10)
        self.assertEqual(cache.get("b"), 2)

    def test_sweep_removes_only_expired_entries(self):
        cache = ResponseCache(max_entries=4, default_ttl=600, clock=self.clock)
        cache.set("short", 1, ttl=5)
        cache.set("long", 2, ttl=500)
        self.clock.advance(6)
        self.assertEqual(cache.sweep(), 1)
        self.assertFalse(cache.has("short"))
        self.assertTrue(cache.has("long"))

    def test_snapshot_does_not_expose_values(self):
        cache = ResponseCache(max_entries=4, default_ttl=600, clock=self.clock)
        cache.set("k", _make_result("secret"))
        cache.get("k")
        snapshot = cache.snapshot()
        self.assertEqual(snapshot["size"], 1)
        self.assertEqual(snapshot["entries"][0]["key"], "k")
        self.assertEqual(snapshot["entries"][0]["access_count"], 1)
        self.assertNotIn("value", snapshot["entries"][0])

    def test_sweeper_disabled_without_interval(self):
        cache = ResponseCache(max_entries=4, default_ttl=600, sweep_interval=0)
        cache.start_sweeper()
        self.assertIsNone(cache._sweeper)
        cache.stop()

    def test_rejects_non_positive_capacity(self):
        with self.assertRaises(ValueError):
            ResponseCache(max_entries=0)


class RedisResponseCacheTests(unittest.TestCase):
    def test_set_serializes_with_millisecond_ttl(self):
        client = MagicMock()
        cache = RedisResponseCache(client, default_ttl=600)
        cache.set("k", _make_result("a", "c1"), ttl=30)

        key, raw = client.set.call_args.args
        self.assertEqual(key, "k")
        self.assertEqual(client.set.call_args.kwargs["px"], 30000)
        payload = json.loads(raw)
        self.assertEqual(payload["cursor"], "c1")
        self.assertEqual(payload["posts"][0]["postId"], "a")

    def test_get_round_trips_through_json(self):
        client = MagicMock()
        original = _make_result("a", "c1")
        stored = {}
        client.set.side_effect = lambda key, raw, px: stored.__setitem__(key, raw)
        client.get.side_effect = lambda key: stored.get(key)
        cache = RedisResponseCache(client)

        cache.set("k", original)
        self.assertEqual(cache.get("k"), original)
        self.assertIsNone(cache.get("missing"))

    def test_store_errors_degrade_to_miss(self):
        client = MagicMock()
        client.get.side_effect = ConnectionError("down")
        cache = RedisResponseCache(client)
        self.assertIsNone(cache.get("k"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
