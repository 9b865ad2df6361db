"""Real-time channel: one WebSocket per browser tab or device.

Client frames look like ``{"event": ..., "data": {...}, "ref": "..."}``. A frame
with a ``ref`` gets exactly one ``ack`` frame back carrying the same ``ref``,
unless the event is a typing indicator, which is never acknowledged. Frames of
one connection are handled in the order they arrive.
"""

import asyncio
import json
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect, status

from api.auth import resolve_caller
from db.models import Caller
from market.errors import MarketError, ValidationError
from market.hub import Connection
from utils.events import AckEvent
from utils.logger import get_logger
from utils.state import AppState

_logger = get_logger(__name__)

Handler = Callable[[AppState, Caller, dict], Awaitable[Any]]


async def _send_message(state: AppState, caller: Caller, data: dict) -> Any:
    message = await state.messaging.send_message(
        data.get("conversationId"), caller.id, data.get("content")
    )
    return {"message": message.to_dict()}


async def _typing(state: AppState, caller: Caller, data: dict) -> Any:
    await state.messaging.emit_typing(
        data.get("conversationId"), caller.id, bool(data.get("isTyping"))
    )


async def _mark_read(state: AppState, caller: Caller, data: dict) -> Any:
    updated = await state.messaging.mark_read(data.get("conversationId"), caller.id)
    return {"updated": updated}


HANDLERS: Dict[str, Handler] = {
    "sendMessage": _send_message,
    "typing": _typing,
    "markRead": _mark_read,
}

# lossy by nature, a dropped indicator is not worth a reply
UNACKNOWLEDGED = frozenset({"typing"})


class ChannelSession:
    """Dispatches the frames of one authenticated connection."""

    def __init__(self, state: AppState, caller: Caller, connection: Connection):
        self.state = state
        self.caller = caller
        self.connection = connection

    async def _ack(self, ref: Optional[str], ok: bool, data=None, error=None) -> None:
        if ref is None:
            return
        await self.connection.send(AckEvent(str(ref), ok, data, error).envelope())

    async def handle_text(self, text: str) -> None:
        try:
            frame = json.loads(text)
        except ValueError:
            frame = None
        if not isinstance(frame, dict):
            _logger.warning(f"Malformed frame from {self.connection!r}")
            return
        await self.handle(frame)

    async def handle(self, frame: dict) -> None:
        event = frame.get("event")
        data = frame.get("data") or {}
        ref = frame.get("ref")
        acked = event not in UNACKNOWLEDGED
        handler = HANDLERS.get(event)

        if handler is None or not isinstance(data, dict):
            error = ValidationError(f"Unsupported event {event!r}", "invalid_event")
            await self._ack(ref, False, error=error.to_dict())
            return

        task = asyncio.ensure_future(handler(self.state, self.caller, data))
        try:
            result = await asyncio.wait_for(
                asyncio.shield(task), timeout=self.state.settings.ack_timeout
            )
        except asyncio.TimeoutError:
            _logger.warning(f"{event} from {self.caller.id} exceeded the ack timeout")
            if acked:
                await self._ack(
                    ref, False, error={"reason": "timeout", "message": "Request timed out"}
                )
            await self._finish_late(task, event)
        except MarketError as exc:
            if acked:
                _logger.info(f"{event} from {self.caller.id} rejected: {exc.reason}")
                await self._ack(ref, False, error=exc.to_dict())
            else:
                _logger.debug(f"{event} from {self.caller.id} dropped: {exc.reason}")
        except Exception:
            _logger.exception(f"Socket {event} failed for {self.caller.id}")
            if acked:
                await self._ack(
                    ref,
                    False,
                    error={"reason": "internal_error", "message": f"Failed to handle {event}"},
                )
        else:
            if acked:
                await self._ack(ref, True, data=result)

    async def _finish_late(self, task: "asyncio.Future", event: str) -> None:
        # keep per-connection ordering: the next frame waits for this one
        try:
            await task
        except MarketError as exc:
            _logger.info(f"Late {event} from {self.caller.id} rejected: {exc.reason}")
        except Exception:
            _logger.exception(f"Late {event} failed for {self.caller.id}")


async def realtime_channel(websocket: WebSocket) -> None:
    state: AppState = websocket.app.state.market
    try:
        caller = await resolve_caller(state, websocket.query_params.get("token"))
    except MarketError as exc:
        _logger.warning(f"Socket connection refused: {exc.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    send_lock = asyncio.Lock()

    async def send(frame: dict) -> None:
        async with send_lock:
            await websocket.send_json(frame)

    connection = Connection(uuid.uuid4().hex, caller.id, send, websocket.close)
    session = ChannelSession(state, caller, connection)
    state.hub.attach(connection)
    try:
        await state.presence.on_connect(caller.id, connection.connection_id)
        while True:
            text = await websocket.receive_text()
            await session.handle_text(text)
    except WebSocketDisconnect:
        pass
    finally:
        state.hub.detach(connection.connection_id)
        await state.presence.on_disconnect(caller.id, connection.connection_id)
