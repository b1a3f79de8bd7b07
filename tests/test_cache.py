"""Local cache tests — staleness, prefix invalidation, single-flight fetches.

Learn: A fake clock drives TTL expiry, and fetchers gated on an
asyncio.Event let a test hold a fetch open while it invalidates.
"""

import asyncio

import pytest

from reviewsync.sync import keys
from reviewsync.sync.cache import MISS, LocalCache
from reviewsync.sync.keys import CacheKey


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class CountingFetcher:
    def __init__(self, value="fresh", gate: asyncio.Event = None):
        self.value = value
        self.gate = gate
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return self.value


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def cache(clock):
    return LocalCache(ttls={"notifications:unread-count": 5.0}, default_ttl=30.0, clock=clock)


# ═══════════════════════════════════════════════════════════
# Keys
# ═══════════════════════════════════════════════════════════


def test_list_keys_share_a_prefix():
    prefix = keys.notifications.lists("u1")
    assert prefix.is_prefix_of(keys.notifications.list("u1", 50, False))
    assert prefix.is_prefix_of(keys.notifications.list("u1", 10, True))
    assert not prefix.is_prefix_of(keys.notifications.list("u2", 50, False))
    assert not prefix.is_prefix_of(keys.notifications.unread_count("u1"))


def test_key_parts_are_normalized():
    import uuid

    uid = uuid.uuid4()
    assert keys.comments.list(uid) == keys.comments.list(str(uid))
    assert str(keys.approvals.stats("i1")) == "approvals/stats/i1"
    assert keys.approvals.stats("i1").ttl_name == "approvals:stats"


def test_key_needs_a_namespace():
    with pytest.raises(ValueError):
        CacheKey.of()


# ═══════════════════════════════════════════════════════════
# Reads, writes, staleness
# ═══════════════════════════════════════════════════════════


def test_miss_is_falsy(cache):
    entry = cache.get(keys.comments.list("i1"))
    assert entry is MISS
    assert not entry


def test_set_then_get_is_fresh(cache, clock):
    key = keys.comments.list("i1")
    cache.set(key, [{"id": "c1"}])

    entry = cache.get(key)
    assert entry.value == [{"id": "c1"}]
    assert entry.fetched_at == clock.now
    assert entry.is_stale is False


def test_ttl_expiry_marks_stale(cache, clock):
    key = keys.notifications.unread_count("u1")
    cache.set(key, 3)

    clock.now += 4.9
    assert cache.get(key).is_stale is False
    clock.now += 0.2
    assert cache.get(key).is_stale is True
    # Stale entries are still served
    assert cache.get(key).value == 3


def test_ttl_lookup_order(cache):
    assert cache.ttl_for(keys.notifications.unread_count("u1")) == 5.0
    assert cache.ttl_for(keys.comments.list("i1")) == 30.0


def test_invalidate_prefix_marks_every_variant(cache):
    a = keys.notifications.list("u1", 50, False)
    b = keys.notifications.list("u1", 10, True)
    other = keys.notifications.list("u2", 50, False)
    for key in (a, b, other):
        cache.set(key, [])

    assert cache.invalidate(keys.notifications.lists("u1")) == 2

    assert cache.get(a).is_stale
    assert cache.get(b).is_stale
    assert not cache.get(other).is_stale


def test_invalidate_unknown_key_matches_nothing(cache):
    assert cache.invalidate(keys.comments.list("nothing")) == 0


def test_update_and_remove(cache):
    key = keys.notifications.unread_count("u1")
    assert cache.update(key, lambda n: n + 1) is None

    cache.set(key, 2)
    assert cache.update(key, lambda n: n - 1).value == 1

    cache.remove(key)
    assert cache.get(key) is MISS


def test_invalidate_many_sums_matches(cache):
    a = keys.comments.list("i1")
    b = keys.comments.unresolved_count("i1")
    for key in (a, b, keys.comments.list("i2")):
        cache.set(key, [])

    assert cache.invalidate_many([a, b, keys.approvals.list("i1")]) == 2
    assert cache.get(a).is_stale
    assert cache.get(b).is_stale
    assert not cache.get(keys.comments.list("i2")).is_stale


@pytest.mark.asyncio
async def test_removed_keys_leave_no_bookkeeping(cache):
    """Browsing many items must not grow the cache's internal maps."""
    for n in range(20):
        key = keys.comments.list(f"item-{n}")
        await cache.get_or_fetch(key, CountingFetcher([]))
        cache.invalidate(key)
        cache.remove(key)

    assert cache.keys() == []
    assert cache._fetchers == {}
    assert cache._generations == {}


@pytest.mark.asyncio
async def test_unobserved_key_without_value_drops_fetcher(cache):
    key = keys.notifications.unread_count("u1")

    async def failing():
        raise RuntimeError("offline")

    unobserve = cache.observe(key, failing)
    await cache.wait_idle()
    assert cache.get(key) is MISS

    unobserve()
    assert key not in cache._fetchers
    assert key not in cache._generations

    # A later fetch with a working fetcher is unaffected
    assert await cache.get_or_fetch(key, CountingFetcher()) == "fresh"
    assert key in cache._fetchers


# ═══════════════════════════════════════════════════════════
# Fetching
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_get_or_fetch_caches(cache):
    key = keys.comments.unresolved_count("i1")
    fetcher = CountingFetcher(4)

    assert await cache.get_or_fetch(key, fetcher) == 4
    assert await cache.get_or_fetch(key, fetcher) == 4
    assert fetcher.calls == 1

    cache.invalidate(key)
    assert await cache.get_or_fetch(key, fetcher) == 4
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_concurrent_fetches_share_one_request(cache):
    key = keys.approvals.list("i1")
    gate = asyncio.Event()
    fetcher = CountingFetcher(["a1"], gate)

    first = asyncio.create_task(cache.fetch(key, fetcher))
    second = asyncio.create_task(cache.fetch(key, fetcher))
    await asyncio.sleep(0)
    gate.set()

    assert await first == ["a1"]
    assert await second == ["a1"]
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_fetch_overtaken_by_invalidation_lands_stale(cache):
    """A response that started before an invalidation must not look fresh."""
    key = keys.approvals.stats("i1")
    gate = asyncio.Event()
    fetcher = CountingFetcher({"total": 1}, gate)

    task = asyncio.create_task(cache.fetch(key, fetcher))
    await asyncio.sleep(0)
    cache.invalidate(key)
    gate.set()
    await task

    assert cache.get(key).is_stale is True
    await cache.aclose()


@pytest.mark.asyncio
async def test_fetch_without_fetcher(cache):
    with pytest.raises(KeyError):
        await cache.fetch(keys.comments.list("i1"))


@pytest.mark.asyncio
async def test_stale_get_schedules_refetch(cache):
    key = keys.comments.list("i1")
    fetcher = CountingFetcher([{"id": "c2"}])
    await cache.get_or_fetch(key, fetcher)
    cache.invalidate(key)

    entry = cache.get(key)
    assert entry.is_stale
    await cache.wait_idle()

    assert fetcher.calls == 2
    assert cache.get(key).is_stale is False


# ═══════════════════════════════════════════════════════════
# Observation and reconciliation
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_observed_key_refetches_on_invalidate(cache):
    key = keys.notifications.unread_count("u1")
    fetcher = CountingFetcher(7)
    seen = []

    unobserve = cache.observe(key, fetcher, lambda entry: seen.append(entry.value))
    await cache.wait_idle()
    assert seen == [7]

    fetcher.value = 8
    cache.invalidate(key)
    await cache.wait_idle()
    assert seen == [7, 8]
    assert fetcher.calls == 2

    unobserve()
    unobserve()
    assert not cache.is_observed(key)

    cache.invalidate(key)
    await cache.wait_idle()
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_reconcile_refetches_known_keys(cache):
    comments_key = keys.comments.list("i1")
    count_key = keys.comments.unresolved_count("i1")
    other_key = keys.comments.list("i2")
    fetchers = {k: CountingFetcher(0) for k in (comments_key, count_key, other_key)}
    for key, fetcher in fetchers.items():
        await cache.get_or_fetch(key, fetcher)

    matched = cache.reconcile([comments_key, count_key])
    await cache.wait_idle()

    assert matched == 2
    assert fetchers[comments_key].calls == 2
    assert fetchers[count_key].calls == 2
    assert fetchers[other_key].calls == 1


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_writes(cache):
    key = keys.content.detail("i1")

    def broken(entry):
        raise RuntimeError("render failed")

    cache.observe(key, CountingFetcher({"status": "draft"}), broken)
    await cache.wait_idle()

    assert cache.get(key).value == {"status": "draft"}
