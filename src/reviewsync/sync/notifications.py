"""Notification read tracker — one user's notification center, kept live.

Learn: The tracker owns a notifications subscription filtered on
user_id=eq.<user>. Any INSERT or UPDATE on that stream invalidates the
user's notification lists and unread count, so both are refetched from
the server and the count keeps matching the rows.

mark_read / mark_all_read update the cached lists and count right away
(tagged with a provenance id so the echo events are skipped) and then
invalidate both keys, whether the RPC worked or not.
"""

from typing import Any, Callable, Optional

import structlog

from reviewsync.config import settings
from reviewsync.events.types import NOTIFICATIONS
from reviewsync.realtime.events import ChangeEvent, Operation, StreamFilter
from reviewsync.sync import keys
from reviewsync.sync.api import ReviewSyncApi
from reviewsync.sync.cache import LocalCache
from reviewsync.sync.provenance import ProvenanceLedger
from reviewsync.sync.registry import SubscriptionRegistry

logger = structlog.get_logger()


class NotificationTracker:
    def __init__(
        self,
        api: ReviewSyncApi,
        registry: SubscriptionRegistry,
        cache: LocalCache,
        provenance: ProvenanceLedger,
        user_id,
        *,
        limit: Optional[int] = None,
    ):
        self.api = api
        self.registry = registry
        self.cache = cache
        self.provenance = provenance
        self.user_id = str(user_id)
        self.limit = limit or settings.notification_list_limit
        self._subscription_id: Optional[str] = None
        self._on_new: list[Callable[[dict], Any]] = []

    @property
    def invalidation_keys(self):
        return (keys.notifications.lists(self.user_id), keys.notifications.unread_count(self.user_id))

    def on_new(self, callback: Callable[[dict], Any]) -> None:
        """Called with the row of every new notification for this user."""
        self._on_new.append(callback)

    # ─── Lifecycle ────────────────────────────────────────

    async def start(self) -> str:
        if self._subscription_id is None:
            self._subscription_id = await self.registry.subscribe(
                NOTIFICATIONS,
                StreamFilter.eq("user_id", self.user_id),
                invalidation_keys=self.invalidation_keys,
                handler=self._handle,
                event_kinds={Operation.INSERT, Operation.UPDATE},
            )
        return self._subscription_id

    async def stop(self) -> None:
        subscription_id, self._subscription_id = self._subscription_id, None
        if subscription_id is not None:
            await self.registry.unsubscribe(subscription_id)

    def _handle(self, event: ChangeEvent) -> None:
        row = event.payload
        if str(row.get("user_id")) != self.user_id:
            logger.warning(
                "notifications.foreign_event",
                user_id=self.user_id,
                event_id=event.event_id,
            )
            return
        if event.operation is Operation.INSERT:
            for callback in list(self._on_new):
                callback(row)

    # ─── Queries (through the cache) ──────────────────────

    async def list(self, limit: Optional[int] = None, unread_only: bool = False) -> list[dict]:
        limit = limit or self.limit
        return await self.cache.get_or_fetch(
            keys.notifications.list(self.user_id, limit, unread_only),
            lambda: self.api.list_notifications(self.user_id, limit, unread_only),
        )

    async def unread_count(self) -> int:
        return await self.cache.get_or_fetch(
            keys.notifications.unread_count(self.user_id),
            lambda: self.api.unread_count(self.user_id),
        )

    def observe_unread_count(self, listener) -> Callable[[], None]:
        return self.cache.observe(
            keys.notifications.unread_count(self.user_id),
            lambda: self.api.unread_count(self.user_id),
            listener,
        )

    # ─── Read state ───────────────────────────────────────

    async def mark_read(self, notification_id) -> dict:
        target = str(notification_id)
        was_unread = any(
            str(row.get("id")) == target and not row.get("read")
            for rows in self._cached_lists().values()
            for row in rows
        )

        def mark(rows):
            return [{**row, "read": True} if str(row.get("id")) == target else row for row in rows]

        return await self._optimistic(
            mark,
            (lambda n: max(0, n - 1)) if was_unread else None,
            lambda mutation_id: self.api.mark_read(target, mutation_id=mutation_id),
        )

    async def mark_all_read(self) -> int:
        return await self._optimistic(
            lambda rows: [{**row, "read": True} for row in rows],
            lambda _n: 0,
            lambda mutation_id: self.api.mark_all_read(self.user_id, mutation_id=mutation_id),
        )

    async def _optimistic(self, update_rows, update_count, rpc):
        mutation_id = self.provenance.new_mutation((NOTIFICATIONS,))
        before: dict = {}
        for key, rows in self._cached_lists().items():
            before[key] = rows
            self.cache.update(key, update_rows)
        count_key = keys.notifications.unread_count(self.user_id)
        entry = self.cache.get(count_key)
        if entry and update_count is not None:
            before[count_key] = entry.value
            self.cache.update(count_key, update_count)

        try:
            return await rpc(mutation_id)
        except BaseException:
            self.provenance.discard(mutation_id)
            for key, value in before.items():
                self.cache.update(key, lambda _current, value=value: value)
            raise
        finally:
            self.cache.invalidate_many(self.invalidation_keys)

    def _cached_lists(self) -> dict:
        prefix = keys.notifications.lists(self.user_id)
        found = {}
        for key in self.cache.keys():
            if prefix.is_prefix_of(key):
                entry = self.cache.get(key)
                if entry:
                    found[key] = entry.value
        return found