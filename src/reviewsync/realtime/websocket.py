"""WebSocket endpoint — relays one filtered change stream to a remote client.

Learn: Each client connects to
/ws/changes/{entity_type}?filter=column=eq.value[&events=INSERT,UPDATE][&user_id=...]
The handler:
1. Parses and validates the filter against the entity's scope columns
2. Refuses notification streams of anyone but the connecting user
3. Connects to the change transport (Redis or the in-process broker)
4. Forwards every accepted ChangeEvent as JSON until either side hangs up

This is a long-lived connection — one per subscribed scope.
"""

import asyncio
import json

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from reviewsync.errors import ChannelConnectionError, ValidationError
from reviewsync.events.types import NOTIFICATIONS
from reviewsync.realtime.events import ALL_OPERATIONS, Operation, StreamFilter, StreamRequest

logger = structlog.get_logger()
router = APIRouter()

# Application-defined close codes (4000-4999)
CLOSE_BAD_REQUEST = 4400
CLOSE_FORBIDDEN = 4003


def parse_stream_request(entity_type: str, expression: str, events: str = "") -> StreamRequest:
    """Build a validated StreamRequest from query parameters."""
    kinds = ALL_OPERATIONS
    if events:
        try:
            kinds = frozenset(Operation(k.strip().upper()) for k in events.split(",") if k.strip())
        except ValueError as e:
            raise ValidationError(f"Unknown event kind in {events!r}") from e
    request = StreamRequest(
        entity_type=entity_type,
        filter=StreamFilter.parse(expression),
        event_kinds=kinds or ALL_OPERATIONS,
    )
    return request.validate_scope()


@router.websocket("/ws/changes/{entity_type}")
async def change_stream_websocket(websocket: WebSocket, entity_type: str):
    """WebSocket endpoint for one scoped change stream.

    Learn: Two concurrent tasks run:
    1. Stream listener — reads ChangeEvents, sends them to the WebSocket
    2. Client listener — answers pings, detects disconnects

    When either side finishes, both tasks are cancelled cleanly. A
    dropped upstream stream closes the socket with 1011 so the client
    reconnects and reconciles.
    """
    params = websocket.query_params
    try:
        request = parse_stream_request(entity_type, params.get("filter", ""), params.get("events", ""))
    except ValidationError as e:
        await websocket.close(code=CLOSE_BAD_REQUEST, reason=str(e))
        return

    if entity_type == NOTIFICATIONS and request.filter.value != params.get("user_id"):
        await websocket.close(code=CLOSE_FORBIDDEN, reason="Notification streams are private")
        return

    await websocket.accept()

    transport = websocket.app.state.transport
    try:
        stream = await transport.connect(request)
    except ChannelConnectionError as e:
        logger.warning("ws.upstream_unavailable", stream=request.stream_name, error=str(e))
        await websocket.close(code=1011, reason="Change stream unavailable")
        return

    logger.info("ws.connected", stream=request.stream_name)
    close_code = 1000

    async def stream_listener():
        """Forward accepted events to the WebSocket client."""
        nonlocal close_code
        try:
            async for event in stream:
                if request.accepts(event):
                    await websocket.send_text(event.model_dump_json())
        except ChannelConnectionError as e:
            logger.info("ws.upstream_dropped", stream=request.stream_name, error=str(e))
            close_code = 1011

    async def client_listener():
        """Handle incoming WebSocket messages (only ping for now)."""
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError:
                    continue
                if isinstance(msg, dict) and msg.get("type") == "ping":
                    await websocket.send_text(json.dumps({"type": "pong"}))
        except WebSocketDisconnect:
            pass

    stream_task = asyncio.create_task(stream_listener())
    client_task = asyncio.create_task(client_listener())

    try:
        _, pending = await asyncio.wait(
            [stream_task, client_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
    finally:
        await stream.close()
        logger.info("ws.disconnected", stream=request.stream_name)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close(code=close_code)
