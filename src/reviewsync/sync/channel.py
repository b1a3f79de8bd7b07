"""Change event channel — one live, filtered connection to one change stream.

Learn: A channel owns exactly one transport stream at a time and one
supervisor task that keeps it alive:

    open() ──handshake──► CONNECTED ──link lost──► DISCONNECTED
                              ▲                        │
                              └──── backoff retry ◄────┘   (until close())

- open() is strict: a handshake that does not finish within the
  handshake timeout raises ChannelConnectionError.
- start() is lenient: the same failure just starts the retry loop.
- Retries are driven by tenacity: the first attempt goes out at once,
  later ones wait with exponential backoff and full jitter, and they
  never give up. Status stays DISCONNECTED for the whole outage window.
- Any failure while reading the stream counts as a lost link.
- Nothing is buffered across an outage. Every reconnect fires the
  on_reconnected listeners so consumers can reconcile their caches.

Handlers are fire-and-continue: a handler returning an awaitable has it
scheduled as a task, so a slow handler never holds up the next event.
"""

import asyncio
import enum
import inspect
from typing import Any, Awaitable, Callable, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_never,
    wait_exponential,
    wait_random_exponential,
)

from reviewsync.config import settings
from reviewsync.errors import ChannelConnectionError
from reviewsync.realtime.events import ChangeEvent, StreamRequest

logger = structlog.get_logger()

EventHandler = Callable[[ChangeEvent], Any]
StatusListener = Callable[["ChannelStatus"], Any]
Sleep = Callable[[float], Awaitable[Any]]


class ChannelStatus(str, enum.Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


class Backoff:
    """Reconnect policy: retry n waits uniform(0, min(cap, base * 2**(n-1))).

    With jitter=False the wait is the ceiling itself.
    """

    def __init__(
        self,
        base: Optional[float] = None,
        cap: Optional[float] = None,
        *,
        jitter: bool = True,
    ):
        self.base = settings.backoff_base_seconds if base is None else base
        self.cap = settings.backoff_cap_seconds if cap is None else cap
        self.jitter = jitter

    @property
    def wait(self):
        if self.jitter:
            return wait_random_exponential(multiplier=self.base, max=self.cap)
        return wait_exponential(multiplier=self.base, max=self.cap)

    def retrying(self, sleep: Sleep, before_sleep: Callable[[RetryCallState], Any]) -> AsyncRetrying:
        return AsyncRetrying(
            wait=self.wait,
            retry=retry_if_exception_type(ChannelConnectionError),
            stop=stop_never,
            sleep=sleep,
            before_sleep=before_sleep,
            reraise=True,
        )


class ChangeEventChannel:
    def __init__(
        self,
        transport,
        request: StreamRequest,
        *,
        handshake_timeout: Optional[float] = None,
        backoff: Optional[Backoff] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.transport = transport
        self.request = request
        self.handshake_timeout = (
            settings.handshake_timeout_seconds if handshake_timeout is None else handshake_timeout
        )
        self.backoff = backoff or Backoff()
        self._sleep = sleep

        self.status = ChannelStatus.DISCONNECTED
        self.reconnect_count = 0
        self._ever_connected = False
        self._closed = False
        self._stream = None
        self._task: Optional[asyncio.Task] = None
        self._connected = asyncio.Event()
        self._handlers: list[EventHandler] = []
        self._status_listeners: list[StatusListener] = []
        self._reconnect_listeners: list[Callable[[], Any]] = []
        self._handler_tasks: set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return self.request.stream_name

    @property
    def closed(self) -> bool:
        return self._closed

    # ─── Listeners ────────────────────────────────────────

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def on_status(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def on_reconnected(self, listener: Callable[[], Any]) -> None:
        """Called after every successful reconnect (not the first connect)."""
        self._reconnect_listeners.append(listener)

    # ─── Lifecycle ────────────────────────────────────────

    async def open(self) -> "ChangeEventChannel":
        """Connect now. Raises ChannelConnectionError if the handshake fails."""
        if self._closed:
            raise ChannelConnectionError(f"Channel {self.name} is closed")
        if self._task is not None:
            return self
        self._set_status(ChannelStatus.CONNECTING)
        try:
            stream = await self._handshake()
        except ChannelConnectionError:
            self._set_status(ChannelStatus.DISCONNECTED)
            raise
        self._on_connected(stream)
        self._supervise(stream)
        return self

    async def start(self) -> "ChangeEventChannel":
        """Connect, falling back to the retry loop instead of raising."""
        try:
            return await self.open()
        except ChannelConnectionError as e:
            logger.warning("channel.open_failed", stream=self.name, error=str(e))
            self._supervise(None)
            return self

    async def reconnect(self) -> None:
        """Drop the current link and connect again right away with a fresh retry budget."""
        if self._closed:
            raise ChannelConnectionError(f"Channel {self.name} is closed")
        logger.info("channel.manual_reconnect", stream=self.name)
        await self._stop_supervisor()
        self._set_status(ChannelStatus.DISCONNECTED)
        self._supervise(None)

    async def close(self) -> None:
        """Release the connection. Safe to call any number of times."""
        if self._closed:
            return
        self._closed = True
        await self._stop_supervisor()
        for task in list(self._handler_tasks):
            task.cancel()
        self._set_status(ChannelStatus.CLOSED)
        logger.debug("channel.closed", stream=self.name)

    async def wait_connected(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout)

    # ─── Supervisor ───────────────────────────────────────

    def _supervise(self, stream) -> None:
        self._task = asyncio.create_task(self._run(stream))
        self._task.add_done_callback(self._supervisor_done)

    def _supervisor_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("channel.supervisor_failed", stream=self.name, error=repr(error))
            if not self._closed:
                self._set_status(ChannelStatus.DISCONNECTED)

    async def _run(self, stream) -> None:
        while not self._closed:
            if stream is None:
                stream = await self._reconnect()
            await self._pump(stream)
            stream = None
            if not self._closed:
                self._set_status(ChannelStatus.DISCONNECTED)

    async def _reconnect(self):
        async for attempt in self.backoff.retrying(self._sleep, self._before_retry):
            with attempt:
                stream = await self._handshake()
        reconnected = self._ever_connected
        self._on_connected(stream)
        if reconnected:
            self.reconnect_count += 1
            logger.info("channel.reconnected", stream=self.name, count=self.reconnect_count)
            self._fire(self._reconnect_listeners)
        return stream

    def _before_retry(self, retry_state: RetryCallState) -> None:
        logger.info(
            "channel.retrying",
            stream=self.name,
            attempt=retry_state.attempt_number,
            delay=round(retry_state.next_action.sleep, 3),
            error=str(retry_state.outcome.exception()),
        )

    async def _pump(self, stream) -> None:
        try:
            async for event in stream:
                self._dispatch(event)
        except Exception as e:
            if not self._closed:
                logger.warning("channel.disconnected", stream=self.name, error=repr(e))
        else:
            if not self._closed:
                logger.warning("channel.disconnected", stream=self.name, error="stream ended")
        finally:
            self._stream = None
            await stream.close()

    async def _handshake(self):
        try:
            return await asyncio.wait_for(
                self.transport.connect(self.request), self.handshake_timeout
            )
        except asyncio.TimeoutError as e:
            raise ChannelConnectionError(
                f"Handshake for {self.name} timed out after {self.handshake_timeout}s"
            ) from e
        except ChannelConnectionError:
            raise
        except Exception as e:
            raise ChannelConnectionError(f"Could not connect {self.name}: {e!r}") from e

    async def _stop_supervisor(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        stream, self._stream = self._stream, None
        if stream is not None:
            await stream.close()
        self._connected.clear()

    def _on_connected(self, stream) -> None:
        self._stream = stream
        self._ever_connected = True
        self._set_status(ChannelStatus.CONNECTED)

    # ─── Delivery ─────────────────────────────────────────

    def _dispatch(self, event: ChangeEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
            except Exception as e:
                logger.error(
                    "channel.handler_failed",
                    stream=self.name,
                    event_id=event.event_id,
                    error=str(e),
                )
                continue
            if inspect.isawaitable(result):
                self._track(asyncio.ensure_future(result))

    def _track(self, task: asyncio.Task) -> None:
        self._handler_tasks.add(task)

        def done(t: asyncio.Task) -> None:
            self._handler_tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("channel.handler_failed", stream=self.name, error=str(t.exception()))

        task.add_done_callback(done)

    def _set_status(self, status: ChannelStatus) -> None:
        if status is ChannelStatus.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()
        if status is self.status:
            return
        self.status = status
        logger.debug("channel.status", stream=self.name, status=status.value)
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as e:
                logger.error("channel.status_listener_failed", stream=self.name, error=str(e))

    def _fire(self, listeners: list[Callable[[], Any]]) -> None:
        for listener in list(listeners):
            try:
                result = listener()
            except Exception as e:
                logger.error("channel.reconnect_listener_failed", stream=self.name, error=str(e))
                continue
            if inspect.isawaitable(result):
                self._track(asyncio.ensure_future(result))
