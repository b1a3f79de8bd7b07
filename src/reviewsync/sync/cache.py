"""Local cache — memoized query results with explicit invalidation.

Learn: The cache is the single shared mutable structure of the sync
client. Everything that touches it from the outside (get, set,
invalidate, reconcile) is synchronous, so on one event loop each call is
atomic: a reader never sees a half-applied invalidation. Only fetching
awaits, and fetch results are applied in one synchronous step too.

Staleness has two sources:
1. Explicit: invalidate(key) marks the key and every key it prefixes
2. Time: an entry older than its TTL reads as stale

A stale entry is still returned (stale-while-revalidate). Refetching
happens immediately for observed keys, otherwise on the next get().

Each key carries a generation counter bumped by every invalidate/set.
A fetch that was overtaken by an invalidation stores its result as
stale and, if someone is watching, fetches again.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog

from reviewsync.config import settings
from reviewsync.sync.keys import CacheKey

logger = structlog.get_logger()

Fetcher = Callable[[], Awaitable[Any]]
Listener = Callable[["CacheEntry"], Any]


@dataclass(frozen=True)
class CacheEntry:
    """Immutable snapshot handed to readers."""

    key: CacheKey
    value: Any
    fetched_at: float
    is_stale: bool


class _Miss:
    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


@dataclass
class _Slot:
    value: Any
    fetched_at: float
    stale: bool = False


class LocalCache:
    def __init__(
        self,
        ttls: Optional[dict[str, float]] = None,
        default_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttls = dict(settings.cache_ttl_seconds if ttls is None else ttls)
        self.default_ttl = settings.default_cache_ttl_seconds if default_ttl is None else default_ttl
        self._clock = clock
        self._slots: dict[CacheKey, _Slot] = {}
        self._generations: dict[CacheKey, int] = {}
        self._fetchers: dict[CacheKey, Fetcher] = {}
        self._listeners: dict[CacheKey, list[Listener]] = {}
        self._observers: dict[CacheKey, int] = {}
        self._inflight: dict[CacheKey, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()

    # ─── Reads ────────────────────────────────────────────

    def get(self, key: CacheKey) -> "CacheEntry | _Miss":
        """Snapshot of the entry, or MISS. Stale entries schedule a refetch."""
        slot = self._slots.get(key)
        if slot is None:
            return MISS
        entry = self._snapshot(key, slot)
        if entry.is_stale and key in self._fetchers:
            self._schedule_fetch(key)
        return entry

    def ttl_for(self, key: CacheKey) -> float:
        if key.ttl_name in self.ttls:
            return self.ttls[key.ttl_name]
        return self.ttls.get(key.namespace, self.default_ttl)

    def keys(self) -> list[CacheKey]:
        return list(self._slots)

    def is_observed(self, key: CacheKey) -> bool:
        return self._observers.get(key, 0) > 0

    # ─── Writes ───────────────────────────────────────────

    def set(self, key: CacheKey, value: Any) -> CacheEntry:
        """Store a fresh value (fetched_at=now, not stale)."""
        self._bump(key)
        slot = _Slot(value=value, fetched_at=self._clock())
        self._slots[key] = slot
        entry = self._snapshot(key, slot)
        self._emit(key, entry)
        return entry

    def update(self, key: CacheKey, fn: Callable[[Any], Any]) -> Optional[CacheEntry]:
        """Apply fn to a cached value in place (speculative updates). No-op on miss."""
        slot = self._slots.get(key)
        if slot is None:
            return None
        self._bump(key)
        slot.value = fn(slot.value)
        entry = self._snapshot(key, slot)
        self._emit(key, entry)
        return entry

    def remove(self, key: CacheKey) -> None:
        self._bump(key)
        self._slots.pop(key, None)
        self._forget(key)

    def invalidate(self, key: CacheKey) -> int:
        """Mark key and every key it prefixes stale. Returns how many matched.

        Observed keys are refetched right away; the rest wait for a get().
        """
        matched = [k for k in self._known_keys() if key.is_prefix_of(k)]
        for k in matched:
            self._bump(k)
            slot = self._slots.get(k)
            if slot is not None:
                slot.stale = True
            if self.is_observed(k):
                self._schedule_fetch(k, force=True)
        if matched:
            logger.debug("cache.invalidated", key=str(key), matched=len(matched))
        return len(matched)

    def invalidate_many(self, keys: Iterable[CacheKey]) -> int:
        return sum(self.invalidate(k) for k in keys)

    def reconcile(self, keys: Optional[Iterable[CacheKey]] = None) -> int:
        """Forced refetch after a possible gap in the change stream.

        Every matching key is marked stale and every one with a known
        fetcher is fetched again, observed or not.
        """
        prefixes = list(keys) if keys is not None else None
        matched = [
            k for k in self._known_keys()
            if prefixes is None or any(p.is_prefix_of(k) for p in prefixes)
        ]
        for k in matched:
            self._bump(k)
            slot = self._slots.get(k)
            if slot is not None:
                slot.stale = True
            if k in self._fetchers:
                self._schedule_fetch(k, force=True)
        logger.info("cache.reconciled", matched=len(matched))
        return len(matched)

    # ─── Observation and fetching ─────────────────────────

    def observe(
        self,
        key: CacheKey,
        fetcher: Fetcher,
        listener: Optional[Listener] = None,
    ) -> Callable[[], None]:
        """Watch a key: keep it fetched and report new values to listener.

        Returns a function that stops observing. Call it exactly once.
        """
        self._fetchers[key] = fetcher
        self._observers[key] = self._observers.get(key, 0) + 1
        if listener is not None:
            self._listeners.setdefault(key, []).append(listener)

        slot = self._slots.get(key)
        if slot is None or self._snapshot(key, slot).is_stale:
            self._schedule_fetch(key)

        released = False

        def unobserve() -> None:
            nonlocal released
            if released:
                return
            released = True
            count = self._observers.get(key, 0) - 1
            if count <= 0:
                self._observers.pop(key, None)
            else:
                self._observers[key] = count
            if listener is not None and listener in self._listeners.get(key, []):
                self._listeners[key].remove(listener)
                if not self._listeners[key]:
                    del self._listeners[key]
            self._forget(key)

        return unobserve

    async def fetch(self, key: CacheKey, fetcher: Optional[Fetcher] = None) -> Any:
        """Fetch a key now. Concurrent callers for the same key share one request."""
        if fetcher is not None:
            self._fetchers[key] = fetcher
        if key not in self._fetchers:
            raise KeyError(f"No fetcher registered for {key}")
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._run_fetch(key))
            self._inflight[key] = task
        return await asyncio.shield(task)

    async def get_or_fetch(self, key: CacheKey, fetcher: Fetcher) -> Any:
        """Cached value if fresh, otherwise fetch it."""
        self._fetchers[key] = fetcher
        entry = self.get(key)
        if entry is not MISS and not entry.is_stale:
            return entry.value
        return await self.fetch(key)

    async def _run_fetch(self, key: CacheKey) -> Any:
        generation = self._generations.get(key, 0)
        try:
            value = await self._fetchers[key]()
        except BaseException:
            self._inflight.pop(key, None)
            self._forget(key)
            raise
        self._inflight.pop(key, None)

        if self._generations.get(key, 0) == generation:
            self.set(key, value)
            return value

        # Overtaken while fetching
        slot = self._slots.get(key)
        if slot is not None and not slot.stale:
            # a newer set() won; keep it
            return slot.value
        self._slots[key] = _Slot(value=value, fetched_at=self._clock(), stale=True)
        self._emit(key, self._snapshot(key, self._slots[key]))
        return value

    def _schedule_fetch(self, key: CacheKey, force: bool = False) -> None:
        if key in self._inflight and not force:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop: the next get() inside one will fetch

        async def refetch():
            inflight = self._inflight.get(key)
            if inflight is not None:
                # Let the running fetch land first; it may already be fresh
                await asyncio.wait([inflight])
                slot = self._slots.get(key)
                if slot is not None and not slot.stale:
                    return
            await self.fetch(key)

        task = loop.create_task(refetch())
        self._background.add(task)
        task.add_done_callback(self._background_done(key))

    def _background_done(self, key: CacheKey):
        def done(task: asyncio.Task) -> None:
            self._background.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.warning("cache.refetch_failed", key=str(key), error=str(exc))

        return done

    async def wait_idle(self) -> None:
        """Wait until no fetch is running or scheduled."""
        while self._background or self._inflight:
            await asyncio.gather(
                *self._background, *self._inflight.values(), return_exceptions=True
            )

    async def aclose(self) -> None:
        tasks = [*self._background, *self._inflight.values()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._inflight.clear()

    # ─── Internals ────────────────────────────────────────

    def _snapshot(self, key: CacheKey, slot: _Slot) -> CacheEntry:
        expired = self._clock() - slot.fetched_at >= self.ttl_for(key)
        return CacheEntry(
            key=key,
            value=slot.value,
            fetched_at=slot.fetched_at,
            is_stale=slot.stale or expired,
        )

    def _bump(self, key: CacheKey) -> None:
        self._generations[key] = self._generations.get(key, 0) + 1

    def _forget(self, key: CacheKey) -> None:
        """Drop the fetcher and generation of a key nothing holds, watches or fetches."""
        if key in self._slots or key in self._observers or key in self._inflight:
            return
        self._fetchers.pop(key, None)
        self._generations.pop(key, None)

    def _known_keys(self) -> list[CacheKey]:
        return list(dict.fromkeys([*self._slots, *self._observers, *self._inflight]))

    def _emit(self, key: CacheKey, entry: CacheEntry) -> None:
        for listener in list(self._listeners.get(key, ())):
            try:
                result = listener(entry)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._background.add(task)
                    task.add_done_callback(self._background_done(key))
            except Exception as e:
                logger.warning("cache.listener_failed", key=str(key), error=str(e))
