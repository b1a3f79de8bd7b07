"""Change stream transports — how a channel reaches the server's change stream.

Learn: A transport turns a StreamRequest into a live ChangeStream. The
contract the channel relies on:
- connect() returns only once the subscription is confirmed, and raises
  ChannelConnectionError when it cannot be established
- iterating a stream yields ChangeEvents in arrival order
- iteration ends quietly after close(); any other end (or a
  ChannelConnectionError) means the link was lost

Two implementations ship: Redis pub/sub for deployed clients and the
in-process broker for a single-process server and tests.
"""

from typing import AsyncIterator, Optional, Protocol

from reviewsync.config import Settings, settings as default_settings
from reviewsync.realtime.events import ChangeEvent, StreamRequest
from reviewsync.realtime.memory import MemoryChangeBroker
from reviewsync.realtime.pubsub import RedisChangeTransport


class ChangeStream(Protocol):
    def __aiter__(self) -> AsyncIterator[ChangeEvent]: ...

    async def close(self) -> None: ...


class ChangeTransport(Protocol):
    async def connect(self, request: StreamRequest) -> ChangeStream: ...


def build_transport(
    config: Optional[Settings] = None,
    broker: Optional[MemoryChangeBroker] = None,
) -> ChangeTransport:
    """Transport for the configured change stream backend."""
    config = config or default_settings
    if config.change_stream_backend == "memory":
        if broker is None:
            raise ValueError("The memory change stream backend needs a broker instance")
        return broker
    return RedisChangeTransport(url=config.redis_url)
