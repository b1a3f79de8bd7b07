"""Sync session — one user's sync client, wired together.

Learn: Construct once per signed-in user, use as an async context
manager. Everything inside shares one cache, one registry (so feeds
opened by different screens share channels) and one provenance ledger
(so our own mutations are recognised on every stream).

    async with SyncSession(user_id, transport=RedisChangeTransport(url=...)) as s:
        await s.notifications.unread_count()
        async with s.comment_feed(item_id) as feed:
            feed.on_new_comment(show_toast)
            await s.workflow.approve(item_id, version_id)
"""

from typing import Optional

import httpx
import structlog

from reviewsync.sync.api import ReviewSyncApi
from reviewsync.sync.cache import LocalCache
from reviewsync.sync.feeds import CommentFeed, ContentFeed
from reviewsync.sync.notifications import NotificationTracker
from reviewsync.sync.provenance import ProvenanceLedger
from reviewsync.sync.registry import ChannelFactory, SubscriptionRegistry
from reviewsync.sync.transport import ChangeTransport, build_transport
from reviewsync.sync.workflow import ReviewWorkflowEngine

logger = structlog.get_logger()


class SyncSession:
    def __init__(
        self,
        user_id,
        *,
        transport: Optional[ChangeTransport] = None,
        api: Optional[ReviewSyncApi] = None,
        base_url: Optional[str] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        cache: Optional[LocalCache] = None,
        channel_factory: Optional[ChannelFactory] = None,
    ):
        self.user_id = str(user_id)
        self._owns_api = api is None
        self.api = api or ReviewSyncApi(self.user_id, base_url, transport=http_transport)
        self.cache = cache or LocalCache()
        self.provenance = ProvenanceLedger(self.user_id)
        self.registry = SubscriptionRegistry(
            transport or build_transport(),
            self.cache,
            provenance=self.provenance,
            channel_factory=channel_factory,
        )
        self.workflow = ReviewWorkflowEngine(self.api, self.cache, self.provenance)
        self.notifications = NotificationTracker(
            self.api, self.registry, self.cache, self.provenance, self.user_id
        )

    def comment_feed(self, content_item_id) -> CommentFeed:
        return CommentFeed(self.registry, self.api, self.cache, self.user_id, content_item_id)

    def content_feed(self, *, content_item_id=None, project_id=None) -> ContentFeed:
        return ContentFeed(
            self.registry,
            self.cache,
            self.user_id,
            content_item_id=content_item_id,
            project_id=project_id,
        )

    async def start(self) -> "SyncSession":
        await self.notifications.start()
        logger.info("sync.session_started", user_id=self.user_id)
        return self

    async def close(self) -> None:
        await self.notifications.stop()
        await self.registry.close()
        await self.cache.aclose()
        if self._owns_api:
            await self.api.aclose()
        logger.info("sync.session_closed", user_id=self.user_id)

    async def __aenter__(self) -> "SyncSession":
        return await self.start()

    async def __aexit__(self, *exc) -> None:
        await self.close()
