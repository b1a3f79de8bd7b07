"""Change event channel tests — handshake, delivery, outage and recovery.

Learn: Connectivity failures are injected by small transports that wrap
the in-process broker. The backoff runs without jitter and the channel
gets an injected sleep, so retry delays are recorded, not waited.
"""

import asyncio

import pytest
from tenacity import RetryCallState

from reviewsync.errors import ChannelConnectionError
from reviewsync.realtime.events import Operation, StreamFilter, StreamRequest, build_events
from reviewsync.sync.channel import Backoff, ChangeEventChannel, ChannelStatus

ITEM_ID = "5f0c6a3e-0000-4000-8000-000000000001"


class FlakyTransport:
    """Refuses the next `fail_next` connects, then defers to the broker."""

    def __init__(self, broker, fail_next: int = 0):
        self.broker = broker
        self.fail_next = fail_next
        self.connects = 0
        self.failures = 0

    async def connect(self, request):
        self.connects += 1
        if self.fail_next:
            self.fail_next -= 1
            self.failures += 1
            raise ChannelConnectionError("connection refused")
        return await self.broker.connect(request)


class SilentTransport:
    """Accepts the connection but never completes the handshake."""

    async def connect(self, request):
        await asyncio.Event().wait()


class BrokenStream:
    """Fails the first read, the way a client library decode error would."""

    def __init__(self):
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        raise RuntimeError("frame decode failed")

    async def close(self):
        self.closed = True


class BreaksOnceTransport:
    """Hands out one broken stream, then defers to the broker."""

    def __init__(self, broker, fail_connect: bool = False):
        self.broker = broker
        self.fail_connect = fail_connect
        self.connects = 0
        self.broken = BrokenStream()

    async def connect(self, request):
        self.connects += 1
        if self.connects == 1:
            if self.fail_connect:
                raise RuntimeError("client library bug")
            return self.broken
        return await self.broker.connect(request)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


def _request():
    return StreamRequest(
        entity_type="comments", filter=StreamFilter.eq("content_item_id", ITEM_ID)
    )


async def _publish_comment(broker, body):
    row = {"id": body, "content_item_id": ITEM_ID, "body": body}
    for event in build_events("comments", Operation.INSERT, row):
        await broker.publish(event)


# ═══════════════════════════════════════════════════════════
# Backoff
# ═══════════════════════════════════════════════════════════


def _wait_for(backoff, attempt):
    state = RetryCallState(None, None, (), {})
    state.attempt_number = attempt
    return backoff.wait(state)


def test_backoff_doubles_up_to_cap():
    backoff = Backoff(base=1.0, cap=30.0, jitter=False)
    assert [_wait_for(backoff, n) for n in range(1, 8)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
    assert _wait_for(backoff, 10_000) == 30.0


def test_backoff_full_jitter():
    backoff = Backoff(base=1.0, cap=30.0)
    for attempt in (1, 4, 10):
        ceiling = min(30.0, 2.0 ** (attempt - 1))
        waits = [_wait_for(backoff, attempt) for _ in range(50)]
        assert all(0 <= w <= ceiling for w in waits)
        assert len(set(waits)) > 1


# ═══════════════════════════════════════════════════════════
# Open and deliver
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_open_connects_and_delivers_in_order(broker, eventually):
    channel = ChangeEventChannel(broker, _request())
    received = []
    channel.on_event(lambda event: received.append(event.payload["body"]))

    await channel.open()
    assert channel.status is ChannelStatus.CONNECTED

    for body in ("one", "two", "three"):
        await _publish_comment(broker, body)
    await eventually(lambda: len(received) == 3)

    assert received == ["one", "two", "three"]
    await channel.close()


@pytest.mark.asyncio
async def test_handshake_timeout_raises():
    channel = ChangeEventChannel(SilentTransport(), _request(), handshake_timeout=0.05)
    statuses = []
    channel.on_status(statuses.append)

    with pytest.raises(ChannelConnectionError):
        await channel.open()

    assert statuses == [ChannelStatus.CONNECTING, ChannelStatus.DISCONNECTED]
    await channel.close()


@pytest.mark.asyncio
async def test_slow_handler_does_not_block_next_event(broker, eventually):
    """An async handler is scheduled, not awaited, before the next event."""
    channel = ChangeEventChannel(broker, _request())
    gate = asyncio.Event()
    fast = []

    async def slow(event):
        await gate.wait()

    channel.on_event(slow)
    channel.on_event(lambda event: fast.append(event.payload["body"]))
    await channel.open()

    await _publish_comment(broker, "a")
    await _publish_comment(broker, "b")
    await eventually(lambda: fast == ["a", "b"])

    gate.set()
    await channel.close()


@pytest.mark.asyncio
async def test_handler_error_does_not_stop_delivery(broker, eventually):
    channel = ChangeEventChannel(broker, _request())
    received = []

    def broken(event):
        raise RuntimeError("boom")

    channel.on_event(broken)
    channel.on_event(lambda event: received.append(event.payload["body"]))
    await channel.open()

    await _publish_comment(broker, "x")
    await _publish_comment(broker, "y")
    await eventually(lambda: received == ["x", "y"])
    await channel.close()


# ═══════════════════════════════════════════════════════════
# Outage and recovery
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_reconnects_after_three_failed_attempts(broker, eventually):
    """connected → disconnected → connected, with backoff between attempts."""
    transport = FlakyTransport(broker)
    sleep = RecordingSleep()
    channel = ChangeEventChannel(
        transport, _request(), backoff=Backoff(1.0, 30.0, jitter=False), sleep=sleep
    )
    statuses = []
    reconnects = []
    channel.on_status(statuses.append)
    channel.on_reconnected(lambda: reconnects.append(True))
    await channel.open()

    transport.fail_next = 3
    assert broker.disconnect(channel.name) == 1
    await eventually(lambda: channel.reconnect_count == 1)

    assert [s for s in statuses if s is not ChannelStatus.CONNECTING] == [
        ChannelStatus.CONNECTED,
        ChannelStatus.DISCONNECTED,
        ChannelStatus.CONNECTED,
    ]
    assert transport.failures == 3
    # The first retry goes out at once
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert reconnects == [True]

    # Events flow again on the new stream
    received = []
    channel.on_event(lambda event: received.append(event.payload["body"]))
    await _publish_comment(broker, "after")
    await eventually(lambda: received == ["after"])
    await channel.close()


@pytest.mark.asyncio
async def test_events_during_outage_are_not_replayed(broker, eventually):
    transport = FlakyTransport(broker)
    gate = asyncio.Event()

    async def held_sleep(delay):
        await gate.wait()

    channel = ChangeEventChannel(transport, _request(), sleep=held_sleep)
    received = []
    channel.on_event(lambda event: received.append(event.payload["body"]))
    await channel.open()

    transport.fail_next = 1
    broker.disconnect(channel.name)
    await eventually(lambda: transport.failures == 1)
    assert channel.status is ChannelStatus.DISCONNECTED
    await _publish_comment(broker, "lost")

    gate.set()
    await eventually(lambda: channel.status is ChannelStatus.CONNECTED)
    await _publish_comment(broker, "kept")
    await eventually(lambda: received == ["kept"])
    await channel.close()


@pytest.mark.asyncio
async def test_stream_error_counts_as_lost_link(broker, eventually):
    """A non-connection error while reading still ends in a reconnect."""
    transport = BreaksOnceTransport(broker)
    channel = ChangeEventChannel(transport, _request(), sleep=RecordingSleep())
    statuses = []
    channel.on_status(statuses.append)
    await channel.open()

    await eventually(lambda: channel.reconnect_count == 1)

    assert transport.connects == 2
    assert transport.broken.closed
    assert [s for s in statuses if s is not ChannelStatus.CONNECTING] == [
        ChannelStatus.CONNECTED,
        ChannelStatus.DISCONNECTED,
        ChannelStatus.CONNECTED,
    ]
    received = []
    channel.on_event(lambda event: received.append(event.payload["body"]))
    await _publish_comment(broker, "still here")
    await eventually(lambda: received == ["still here"])
    await channel.close()


@pytest.mark.asyncio
async def test_unexpected_connect_error_is_retried(broker):
    transport = BreaksOnceTransport(broker, fail_connect=True)
    channel = ChangeEventChannel(transport, _request(), backoff=Backoff(0.001, 0.01))

    await channel.start()
    assert channel.status is ChannelStatus.DISCONNECTED

    await channel.wait_connected(timeout=2)
    assert transport.connects == 2
    await channel.close()


@pytest.mark.asyncio
async def test_start_retries_instead_of_raising(broker):
    transport = FlakyTransport(broker, fail_next=2)
    channel = ChangeEventChannel(transport, _request(), backoff=Backoff(0.001, 0.01))

    await channel.start()
    assert channel.status is ChannelStatus.DISCONNECTED

    await channel.wait_connected(timeout=2)
    assert channel.status is ChannelStatus.CONNECTED
    assert transport.connects == 3
    # The first successful connect is not a reconnect
    assert channel.reconnect_count == 0
    await channel.close()


@pytest.mark.asyncio
async def test_manual_reconnect_skips_backoff(broker, eventually):
    sleep = RecordingSleep()
    channel = ChangeEventChannel(broker, _request(), sleep=sleep)
    await channel.open()

    await channel.reconnect()
    await eventually(lambda: channel.reconnect_count == 1)

    assert sleep.delays == []
    assert channel.status is ChannelStatus.CONNECTED
    assert broker.subscriber_count(channel.name) == 1
    await channel.close()


# ═══════════════════════════════════════════════════════════
# Close
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_close_is_idempotent(broker):
    channel = ChangeEventChannel(broker, _request())
    statuses = []
    channel.on_status(statuses.append)
    await channel.open()

    await channel.close()
    await channel.close()

    assert channel.status is ChannelStatus.CLOSED
    assert statuses.count(ChannelStatus.CLOSED) == 1
    assert broker.subscriber_count() == 0
    with pytest.raises(ChannelConnectionError):
        await channel.open()


@pytest.mark.asyncio
async def test_close_during_backoff_stops_retrying(broker, eventually):
    transport = FlakyTransport(broker, fail_next=100)
    channel = ChangeEventChannel(transport, _request(), backoff=Backoff(0.001, 0.002))

    await channel.start()
    await eventually(lambda: transport.connects >= 3)
    await channel.close()
    attempts = transport.connects
    await asyncio.sleep(0.02)

    assert transport.connects == attempts
    assert channel.status is ChannelStatus.CLOSED
