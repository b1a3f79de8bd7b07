"""Realtime feeds — the comment and content streams a review screen watches.

Learn: A feed is a registry subscription plus the callbacks a screen
cares about. The registry does the cache work (invalidating the keys
listed here); the feed only decides which events are worth telling the
user about:

- CommentFeed: new comments by other people, edits, deletions
- ContentFeed: status changes of one item or of every item in a project,
  ignoring updates the current user made
"""

from typing import Any, Callable, Optional

import structlog

from reviewsync.events.types import COMMENTS, CONTENT_ITEMS
from reviewsync.realtime.events import ChangeEvent, Operation, StreamFilter
from reviewsync.sync import keys
from reviewsync.sync.api import ReviewSyncApi
from reviewsync.sync.cache import LocalCache
from reviewsync.sync.registry import SubscriptionRegistry

logger = structlog.get_logger()

Callback = Callable[..., Any]


class _Feed:
    def __init__(self, registry: SubscriptionRegistry, user_id):
        self.registry = registry
        self.user_id = str(user_id)
        self._subscription_id: Optional[str] = None

    @property
    def subscription_id(self) -> Optional[str]:
        return self._subscription_id

    async def stop(self) -> None:
        subscription_id, self._subscription_id = self._subscription_id, None
        if subscription_id is not None:
            await self.registry.unsubscribe(subscription_id)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    async def start(self) -> str:
        raise NotImplementedError


class CommentFeed(_Feed):
    def __init__(
        self,
        registry: SubscriptionRegistry,
        api: ReviewSyncApi,
        cache: LocalCache,
        user_id,
        content_item_id,
    ):
        super().__init__(registry, user_id)
        self.api = api
        self.cache = cache
        self.content_item_id = str(content_item_id)
        self._on_new: list[Callback] = []
        self._on_updated: list[Callback] = []
        self._on_deleted: list[Callback] = []

    def on_new_comment(self, callback: Callback) -> None:
        """Called with the row of each comment another user adds."""
        self._on_new.append(callback)

    def on_updated(self, callback: Callback) -> None:
        self._on_updated.append(callback)

    def on_deleted(self, callback: Callback) -> None:
        """Called with the last known row of each deleted comment."""
        self._on_deleted.append(callback)

    async def start(self) -> str:
        if self._subscription_id is None:
            self._subscription_id = await self.registry.subscribe(
                COMMENTS,
                StreamFilter.eq("content_item_id", self.content_item_id),
                invalidation_keys=(
                    keys.comments.list(self.content_item_id),
                    keys.comments.unresolved_count(self.content_item_id),
                ),
                handler=self._handle,
            )
        return self._subscription_id

    def _handle(self, event: ChangeEvent) -> None:
        if event.operation is Operation.INSERT:
            if str(event.payload.get("author_id")) == self.user_id:
                return
            callbacks = self._on_new
        elif event.operation is Operation.UPDATE:
            callbacks = self._on_updated
        else:
            callbacks = self._on_deleted
        for callback in list(callbacks):
            callback(event.row)

    async def comments(self) -> list[dict]:
        return await self.cache.get_or_fetch(
            keys.comments.list(self.content_item_id),
            lambda: self.api.list_comments(self.content_item_id),
        )

    async def unresolved_count(self) -> int:
        return await self.cache.get_or_fetch(
            keys.comments.unresolved_count(self.content_item_id),
            lambda: self.api.unresolved_count(self.content_item_id),
        )


class ContentFeed(_Feed):
    """Status changes for one content item, or for every item of a project."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        cache: LocalCache,
        user_id,
        *,
        content_item_id=None,
        project_id=None,
    ):
        if (content_item_id is None) == (project_id is None):
            raise ValueError("ContentFeed needs exactly one of content_item_id or project_id")
        super().__init__(registry, user_id)
        self.cache = cache
        self.content_item_id = str(content_item_id) if content_item_id is not None else None
        self.project_id = str(project_id) if project_id is not None else None
        self._on_status: list[Callback] = []
        self._on_update: list[Callback] = []

    def on_status_change(self, callback: Callback) -> None:
        """Called as callback(row, old_status, new_status)."""
        self._on_status.append(callback)

    def on_update(self, callback: Callback) -> None:
        self._on_update.append(callback)

    async def start(self) -> str:
        if self._subscription_id is None:
            if self.content_item_id is not None:
                stream_filter = StreamFilter.eq("id", self.content_item_id)
                invalidation_keys = (keys.content.detail(self.content_item_id),)
            else:
                stream_filter = StreamFilter.eq("project_id", self.project_id)
                invalidation_keys = (keys.content.list(self.project_id),)
            self._subscription_id = await self.registry.subscribe(
                CONTENT_ITEMS,
                stream_filter,
                invalidation_keys=invalidation_keys,
                handler=self._handle,
                event_kinds={Operation.UPDATE},
            )
        return self._subscription_id

    def _handle(self, event: ChangeEvent) -> None:
        row = event.payload
        if self.project_id is not None and row.get("id"):
            # Project feeds also keep each item's detail fresh
            self.cache.invalidate(keys.content.detail(row["id"]))
        if event.origin_actor_id == self.user_id:
            return
        for callback in list(self._on_update):
            callback(row)
        old_status = (event.old or {}).get("status")
        new_status = row.get("status")
        if old_status != new_status:
            logger.debug(
                "feeds.status_changed",
                content_item_id=row.get("id"),
                old=old_status,
                new=new_status,
            )
            for callback in list(self._on_status):
                callback(row, old_status, new_status)
