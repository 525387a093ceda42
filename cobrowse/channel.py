import asyncio
import json
import logging
import uuid
from collections import defaultdict
from typing import Awaitable, Callable, DefaultDict, Optional

from fastapi import WebSocket, WebSocketDisconnect

from cobrowse.models import envelope

logger = logging.getLogger(__name__)

EventHandler = Callable[["Channel", str, dict], Awaitable[None]]

FRAME_EVENT = "browser-frame"
# Frames queued per viewer while the writer is still busy with earlier ones
MAX_PENDING_FRAMES = 2


class ChannelClosed(ConnectionError):
    pass


class Channel:
    """One accepted WebSocket with an ordered outbound queue.

    ``send`` only enqueues, so several messages handed out in one pass of the
    event loop reach the socket in exactly that order. A single writer task
    owns the socket's send side.

    Screen frames are the one exception to "everything is delivered": when a
    slow reader already has ``MAX_PENDING_FRAMES`` frames for the same viewer
    waiting, newer frames are dropped instead of queued.
    """

    def __init__(self, websocket: WebSocket, channel_id: Optional[str] = None):
        self.id = channel_id or str(uuid.uuid4())
        self.websocket = websocket
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending_frames: DefaultDict[Optional[str], int] = defaultdict(int)
        self._writer: Optional[asyncio.Task] = None

    def send(self, message: dict) -> None:
        if self.closed:
            raise ChannelClosed(self.id)
        if message.get("event") == FRAME_EVENT:
            viewer = (message.get("data") or {}).get("clientId")
            if self._pending_frames[viewer] >= MAX_PENDING_FRAMES:
                logger.debug(f"Dropping frame for {viewer} on {self.id}, writer is behind")
                return
            self._pending_frames[viewer] += 1
        self._queue.put_nowait(message)

    async def serve(self, handler: EventHandler) -> None:
        """Read events until the peer goes away, handing each one to ``handler``."""
        self._writer = asyncio.create_task(self._write_loop())
        try:
            while True:
                received = await self.websocket.receive()
                if received["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(received.get("code", 1000))
                raw = received.get("text")
                if raw is None:
                    self.send(envelope("error", {"message": "Expected text frames"}))
                    continue
                try:
                    message = json.loads(raw)
                except ValueError:
                    self.send(envelope("error", {"message": "Invalid JSON"}))
                    continue
                if not isinstance(message, dict) or not isinstance(message.get("event"), str):
                    self.send(envelope("error", {"message": "Expected {event, data}"}))
                    continue
                data = message.get("data")
                await handler(self, message["event"], data if isinstance(data, dict) else {})
        except WebSocketDisconnect:
            logger.debug(f"WebSocket disconnected: {self.id}")
        finally:
            await self.close()

    async def close(self) -> None:
        self.closed = True
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass

    async def _write_loop(self) -> None:
        try:
            while True:
                message = await self._queue.get()
                if message.get("event") == FRAME_EVENT:
                    self._pending_frames[(message.get("data") or {}).get("clientId")] -= 1
                await self.websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"Send to {self.id} failed: {e}")
            self.closed = True
