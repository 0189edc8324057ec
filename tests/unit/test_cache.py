import pytest
from utils.cache import RequestCache, TTLCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def test_cache_returns_value_before_expiry(clock):
    """Given a fresh entry, when it is read before its TTL passes, it should be returned."""
    cache = TTLCache(ttl=60, clock=clock)
    cache.set("models", ["a", "b"])

    clock.now += 59

    assert cache.get("models") == ["a", "b"]


def test_cache_expires_entries(clock):
    """Given an entry older than its TTL, when it is read, it should be dropped and None returned."""
    cache = TTLCache(ttl=60, clock=clock)
    cache.set("models", ["a"])

    clock.now += 60

    assert cache.get("models") is None


def test_per_entry_ttl_overrides_default(clock):
    """Given an entry set with its own TTL, when the default TTL passes, it should still be served."""
    cache = TTLCache(ttl=10, clock=clock)
    cache.set("long", "value", ttl=100)

    clock.now += 50

    assert cache.get("long") == "value"


def test_cache_evicts_least_recently_used(clock):
    """Given a full cache, when a new key is added, it should evict the least recently read key."""
    cache = TTLCache(ttl=60, max_size=2, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")

    cache.set("c", 3)

    assert cache.get("a") == 1
    assert cache.get("b") is None
    assert cache.get("c") == 3


def test_clear_drops_every_entry(clock):
    """Given cached entries, when cleared, none of them should be served."""
    cache = TTLCache(ttl=60, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)

    cache.clear()

    assert cache.get("a") is None
    assert cache.get("b") is None


@pytest.mark.anyio
async def test_request_cache_loads_once_per_key():
    """Given repeated lookups of one key, when get_or_load is called, it should run the loader only once."""
    cache = RequestCache()
    calls = []

    async def loader():
        calls.append(1)
        return 42

    assert await cache.get_or_load(("credits", "u1"), loader) == 42
    assert await cache.get_or_load(("credits", "u1"), loader) == 42

    assert len(calls) == 1


@pytest.mark.anyio
async def test_request_cache_caches_none_results():
    """Given a loader returning None, when the key is read again, it should not reload."""
    cache = RequestCache()
    calls = []

    async def loader():
        calls.append(1)
        return None

    await cache.get_or_load("missing", loader)
    await cache.get_or_load("missing", loader)

    assert len(calls) == 1

