"""In-process change broker — pub/sub without Redis.

Learn: Same contract as the Redis side: services publish committed
ChangeEvents, subscribers receive the events of one scoped stream.
It is both a ChangePublisher (for services) and a ChangeTransport (for
the sync client and the WebSocket relay), so a single-process server
and the test suite run the whole event path with no external services.

Like Redis pub/sub it keeps no history: a stream only sees events
published while it is connected.
"""

import asyncio
from collections import defaultdict
from typing import Optional

import structlog

from reviewsync.errors import ChannelConnectionError
from reviewsync.realtime.events import ChangeEvent, StreamRequest, stream_name

logger = structlog.get_logger()

_CLOSED = object()
_DROPPED = object()


class MemoryChangeStream:
    """One subscriber's queue of events. Iterate it; close it when done."""

    def __init__(self, broker: "MemoryChangeBroker", name: str, maxsize: int):
        self.name = name
        self._broker = broker
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: ChangeEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("changes.subscriber_overflow", stream=self.name)
            self._drop()

    def _drop(self) -> None:
        """Sever the stream as if the connection was lost."""
        self._broker._detach(self)
        self._force(_DROPPED)

    def _force(self, marker: object) -> None:
        while self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(marker)

    def __aiter__(self) -> "MemoryChangeStream":
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if item is _DROPPED:
            raise ChannelConnectionError(f"Change stream {self.name} was disconnected")
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broker._detach(self)
        self._force(_CLOSED)


class MemoryChangeBroker:
    """Fans published events out to every connected stream of the same scope."""

    def __init__(self, maxsize: int = 1000):
        self._maxsize = maxsize
        self._streams: dict[str, set[MemoryChangeStream]] = defaultdict(set)

    # ─── ChangePublisher ──────────────────────────────────

    async def publish(self, event: ChangeEvent) -> None:
        name = stream_name(event.entity_type, event.scope_key)
        for stream in list(self._streams.get(name, ())):
            stream._offer(event)

    # ─── ChangeTransport ──────────────────────────────────

    async def connect(self, request: StreamRequest) -> MemoryChangeStream:
        request.validate_scope()
        stream = MemoryChangeStream(self, request.stream_name, self._maxsize)
        self._streams[request.stream_name].add(stream)
        logger.debug("changes.stream_connected", stream=request.stream_name)
        return stream

    # ─── Operations ───────────────────────────────────────

    def disconnect(self, name: Optional[str] = None) -> int:
        """Drop every stream (or every stream of one name). Returns how many."""
        targets = [
            s
            for key, streams in list(self._streams.items())
            if name is None or key == name
            for s in list(streams)
        ]
        for stream in targets:
            stream._drop()
        if targets:
            logger.info("changes.streams_dropped", count=len(targets), stream=name)
        return len(targets)

    async def disconnect_all(self) -> int:
        return self.disconnect()

    def subscriber_count(self, name: Optional[str] = None) -> int:
        if name is not None:
            return len(self._streams.get(name, ()))
        return sum(len(s) for s in self._streams.values())

    def _detach(self, stream: MemoryChangeStream) -> None:
        streams = self._streams.get(stream.name)
        if streams is None:
            return
        streams.discard(stream)
        if not streams:
            del self._streams[stream.name]
