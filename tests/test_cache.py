from stravawesome.services.cache import TTLCache

from conftest import FakeClock


class TestTTLCache:

    def test_fresh_entry_is_returned(self):
        clock = FakeClock()
        cache = TTLCache("test", default_ttl=60, clock=clock)
        cache.set("a", [1, 2, 3])
        clock.advance(59)
        assert cache.get("a") == [1, 2, 3]

    def test_entry_expires_at_ttl(self):
        clock = FakeClock()
        cache = TTLCache("test", default_ttl=60, clock=clock)
        cache.set("a", "value")
        clock.advance(60)
        assert cache.get("a") is None

    def test_explicit_ttl_overrides_default(self):
        clock = FakeClock()
        cache = TTLCache("test", default_ttl=60, clock=clock)
        cache.set("a", "value", ttl=600)
        clock.advance(300)
        assert cache.get("a") == "value"

    def test_small_entry_does_not_answer_larger_request(self):
        cache = TTLCache("test", default_ttl=60, clock=FakeClock())
        cache.set("acts", list(range(20)), requested_size=20)
        assert cache.get("acts", requested_size=200) is None
        assert cache.get("acts", requested_size=20) == list(range(20))
        assert cache.get("acts", requested_size=10) == list(range(20))

    def test_stale_read_ignores_expiry_but_not_size(self):
        clock = FakeClock()
        cache = TTLCache("test", default_ttl=60, clock=clock)
        cache.set("acts", ["x"], requested_size=50)
        clock.advance(3600)
        assert cache.get("acts", 50) is None
        assert cache.get_stale("acts", 50) == ["x"]
        assert cache.get_stale("acts", 100) is None

    def test_delete_prefix(self):
        cache = TTLCache("test", default_ttl=60, clock=FakeClock())
        cache.set("activities:1:recent", 1)
        cache.set("activities:1:year:2024", 2)
        cache.set("activities:2:recent", 3)
        assert cache.delete_prefix("activities:1:") == 2
        assert "activities:2:recent" in cache
        assert len(cache) == 1
