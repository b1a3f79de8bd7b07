"""Redis pub/sub — change event broadcasting from services to subscribers.

Learn: Redis pub/sub is fire-and-forget. If no one is listening, the message
is lost. That's fine for change streams: subscribers treat every gap
(disconnect, reconnect) as a reason to refetch, never as something to
replay. The database rows stay the source of truth.

Channel naming: reviewsync:changes:{entity_type}:{column}={value}
One channel per scope, so the equality filter is the channel name itself.
"""

from typing import AsyncIterator, Iterable, Optional, Protocol

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from reviewsync.config import settings
from reviewsync.errors import ChannelConnectionError
from reviewsync.realtime.events import ChangeEvent, StreamRequest, stream_name

logger = structlog.get_logger()

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


class ChangePublisher(Protocol):
    """Anything services can hand committed change events to."""

    async def publish(self, event: ChangeEvent) -> None: ...


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    _redis = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection
    await _redis.ping()
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


class RedisChangePublisher:
    """Publishes each event to the Redis channel of its scope."""

    def __init__(self, redis: Optional[aioredis.Redis] = None):
        self._redis = redis

    async def publish(self, event: ChangeEvent) -> None:
        r = self._redis or get_redis()
        channel = stream_name(event.entity_type, event.scope_key)
        await r.publish(channel, event.model_dump_json())


async def publish_changes(
    publisher: Optional[ChangePublisher],
    events: Iterable[ChangeEvent],
) -> int:
    """Best-effort publish of already-committed changes.

    Learn: Called after the database commit. A failed publish never
    undoes the mutation: subscribers that miss the event catch up on
    their next refetch or reconnect reconciliation.
    """
    if publisher is None:
        return 0
    sent = 0
    for event in events:
        try:
            await publisher.publish(event)
            sent += 1
        except Exception as e:
            logger.warning(
                "changes.publish_failed",
                entity_type=event.entity_type,
                scope_key=event.scope_key,
                operation=event.operation.value,
                error=str(e),
            )
    return sent


# ─── Subscriber side ─────────────────────────────────────


class RedisChangeStream:
    """Events of one Redis channel, decoded back into ChangeEvents."""

    def __init__(self, pubsub, name: str):
        self.name = name
        self._pubsub = pubsub
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        try:
            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    yield ChangeEvent.model_validate_json(message["data"])
                except ValueError as e:
                    logger.warning("changes.malformed_message", stream=self.name, error=str(e))
        except (RedisError, OSError) as e:
            if self._closed:
                return
            raise ChannelConnectionError(f"Change stream {self.name} was disconnected: {e}") from e
        if not self._closed:
            raise ChannelConnectionError(f"Change stream {self.name} ended unexpectedly")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self.name)
        except (RedisError, OSError):
            pass  # connection already gone
        await self._pubsub.aclose()


class RedisChangeTransport:
    """Opens one Redis pub/sub subscription per change stream.

    Learn: connect() returns only after Redis confirms the SUBSCRIBE, so
    a caller wrapping it in a timeout gets a real handshake deadline.
    """

    def __init__(self, redis: Optional[aioredis.Redis] = None, url: Optional[str] = None):
        self._redis = redis
        self._url = url

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            if self._url is None:
                return get_redis()
            self._redis = aioredis.from_url(self._url, encoding="utf-8", decode_responses=True)
        return self._redis

    async def connect(self, request: StreamRequest) -> RedisChangeStream:
        request.validate_scope()
        name = request.stream_name
        try:
            pubsub = self._client().pubsub()
        except RuntimeError as e:
            raise ChannelConnectionError(str(e)) from e
        try:
            await pubsub.subscribe(name)
            while True:
                message = await pubsub.get_message(timeout=1.0)
                if message and message["type"] == "subscribe":
                    break
        except (RedisError, OSError) as e:
            await pubsub.aclose()
            raise ChannelConnectionError(f"Could not subscribe to {name}: {e}") from e
        except BaseException:
            await pubsub.aclose()
            raise
        return RedisChangeStream(pubsub, name)

    async def aclose(self) -> None:
        if self._redis is not None and self._url is not None:
            await self._redis.aclose()
            self._redis = None
