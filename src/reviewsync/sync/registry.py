"""Subscription registry — the single owner of every live change channel.

Learn: Consumers never open channels themselves. They subscribe here with
(entity type, filter, invalidation keys, handler) and get back an id:

- The first subscriber for an (entity type, scope) pair opens a channel.
- Later subscribers for the same pair share it (reference count + 1).
- unsubscribe() decrements; the last one out closes the channel.

On every event the registry
1. skips echoes of our own optimistic mutations (provenance ledger)
2. calls each consumer's handler in registration order, logging and
   swallowing handler exceptions
3. invalidates the cache keys of every consumer that accepted the event

On every reconnect it reconciles the cache for all keys the subscription
covers, because events sent during the outage are gone.
"""

import asyncio
import contextlib
import inspect
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Iterable, Optional, Union

import structlog

from reviewsync.realtime.events import (
    ALL_OPERATIONS,
    ChangeEvent,
    Operation,
    StreamFilter,
    StreamRequest,
)
from reviewsync.sync.cache import LocalCache
from reviewsync.sync.channel import ChangeEventChannel, ChannelStatus
from reviewsync.sync.keys import CacheKey
from reviewsync.sync.provenance import ProvenanceLedger

logger = structlog.get_logger()

EventHandler = Callable[[ChangeEvent], Any]
ChannelFactory = Callable[[StreamRequest], ChangeEventChannel]
ScopeKey = tuple[str, str]


@dataclass
class _Consumer:
    id: str
    handler: Optional[EventHandler]
    invalidation_keys: tuple[CacheKey, ...]
    event_kinds: frozenset[Operation]


@dataclass
class _Subscription:
    request: StreamRequest
    channel: ChangeEventChannel
    consumers: list[_Consumer] = field(default_factory=list)

    @property
    def refcount(self) -> int:
        return len(self.consumers)


@dataclass
class _ScopeLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SubscriptionRegistry:
    def __init__(
        self,
        transport,
        cache: LocalCache,
        *,
        provenance: Optional[ProvenanceLedger] = None,
        channel_factory: Optional[ChannelFactory] = None,
    ):
        self.cache = cache
        self.provenance = provenance
        self._channel_factory = channel_factory or (
            lambda request: ChangeEventChannel(transport, request)
        )
        self._subs: dict[ScopeKey, _Subscription] = {}
        self._by_id: dict[str, ScopeKey] = {}
        self._locks: dict[ScopeKey, _ScopeLock] = {}
        self._tasks: set[asyncio.Task] = set()
        self.reconciliations = 0

    # ─── Subscribe / unsubscribe ──────────────────────────

    async def subscribe(
        self,
        entity_type: str,
        filter: Union[str, StreamFilter],
        *,
        invalidation_keys: Iterable[CacheKey] = (),
        handler: Optional[EventHandler] = None,
        event_kinds: Iterable[Operation] = ALL_OPERATIONS,
    ) -> str:
        """Attach a consumer to the (entity_type, filter) stream. Returns its id."""
        stream_filter = filter if isinstance(filter, StreamFilter) else StreamFilter.parse(filter)
        request = StreamRequest(entity_type=entity_type, filter=stream_filter).validate_scope()
        key = (entity_type, stream_filter.scope_key)
        consumer = _Consumer(
            id=uuid.uuid4().hex,
            handler=handler,
            invalidation_keys=tuple(dict.fromkeys(invalidation_keys)),
            event_kinds=frozenset(event_kinds),
        )

        async with self._scope_lock(key):
            sub = self._subs.get(key)
            if sub is None:
                channel = self._channel_factory(request)
                channel.on_event(lambda event: self._dispatch(key, event))
                channel.on_reconnected(lambda: self._reconcile(key))
                try:
                    await channel.start()
                except BaseException:
                    # Cancelled mid-handshake: nothing may join a channel that never started
                    await channel.close()
                    raise
                sub = _Subscription(request=request, channel=channel)
                self._subs[key] = sub
                logger.info("registry.channel_opened", stream=request.stream_name)
            sub.consumers.append(consumer)
            self._by_id[consumer.id] = key

        logger.debug(
            "registry.subscribed",
            stream=request.stream_name,
            subscription_id=consumer.id,
            refcount=sub.refcount,
        )
        return consumer.id

    async def unsubscribe(self, subscription_id: str) -> bool:
        """Detach a consumer. False if the id is unknown (already unsubscribed)."""
        key = self._by_id.pop(subscription_id, None)
        if key is None:
            return False
        async with self._scope_lock(key):
            sub = self._subs.get(key)
            if sub is None:
                return False
            sub.consumers = [c for c in sub.consumers if c.id != subscription_id]
            if not sub.consumers:
                del self._subs[key]
                await sub.channel.close()
                logger.info("registry.channel_closed", stream=sub.request.stream_name)
        return True

    @contextlib.asynccontextmanager
    async def _scope_lock(self, key: ScopeKey) -> AsyncIterator[None]:
        """Serialize open/close per scope; the lock is dropped once nobody holds or awaits it."""
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _ScopeLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextlib.asynccontextmanager
    async def subscription(self, entity_type: str, filter, **kwargs) -> AsyncIterator[str]:
        """Scoped subscription: unsubscribed exactly once when the block exits."""
        subscription_id = await self.subscribe(entity_type, filter, **kwargs)
        try:
            yield subscription_id
        finally:
            await self.unsubscribe(subscription_id)

    async def reconnect(self, subscription_id: str) -> bool:
        """Force the subscription's channel to reconnect (and then reconcile)."""
        sub = self._lookup(subscription_id)
        if sub is None:
            return False
        await sub.channel.reconnect()
        return True

    async def close(self) -> None:
        subs = list(self._subs.values())
        self._subs.clear()
        self._by_id.clear()
        for sub in subs:
            await sub.channel.close()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    # ─── Introspection ────────────────────────────────────

    @property
    def channel_count(self) -> int:
        return len(self._subs)

    def refcount(self, entity_type: str, filter: Union[str, StreamFilter]) -> int:
        stream_filter = filter if isinstance(filter, StreamFilter) else StreamFilter.parse(filter)
        sub = self._subs.get((entity_type, stream_filter.scope_key))
        return sub.refcount if sub else 0

    def status(self, subscription_id: str) -> Optional[ChannelStatus]:
        sub = self._lookup(subscription_id)
        return sub.channel.status if sub else None

    def channel(self, subscription_id: str) -> Optional[ChangeEventChannel]:
        sub = self._lookup(subscription_id)
        return sub.channel if sub else None

    def _lookup(self, subscription_id: str) -> Optional[_Subscription]:
        key = self._by_id.get(subscription_id)
        return self._subs.get(key) if key else None

    # ─── Event path ───────────────────────────────────────

    def _dispatch(self, key: ScopeKey, event: ChangeEvent) -> None:
        sub = self._subs.get(key)
        if sub is None:
            return
        if not sub.request.filter.matches(event):
            logger.debug("registry.out_of_scope", stream=sub.request.stream_name, event_id=event.event_id)
            return
        if self.provenance is not None and self.provenance.confirm(event):
            logger.debug("registry.own_change_confirmed", event_id=event.event_id)
            return

        accepted: list[_Consumer] = []
        for consumer in list(sub.consumers):
            if event.operation not in consumer.event_kinds:
                continue
            accepted.append(consumer)
            if consumer.handler is None:
                continue
            try:
                result = consumer.handler(event)
                if inspect.isawaitable(result):
                    self._track(asyncio.ensure_future(result), consumer.id)
            except Exception as e:
                logger.error(
                    "registry.handler_failed",
                    subscription_id=consumer.id,
                    event_id=event.event_id,
                    error=str(e),
                )

        for cache_key in dict.fromkeys(k for c in accepted for k in c.invalidation_keys):
            self.cache.invalidate(cache_key)

    def _reconcile(self, key: ScopeKey) -> None:
        sub = self._subs.get(key)
        if sub is None:
            return
        keys = list(dict.fromkeys(k for c in sub.consumers for k in c.invalidation_keys))
        self.cache.reconcile(keys)
        self.reconciliations += 1
        logger.info(
            "registry.reconciled",
            stream=sub.request.stream_name,
            keys=len(keys),
        )

    def _track(self, task: asyncio.Task, subscription_id: str) -> None:
        self._tasks.add(task)

        def done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    "registry.handler_failed",
                    subscription_id=subscription_id,
                    error=str(t.exception()),
                )

        task.add_done_callback(done)
