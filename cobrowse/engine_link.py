"""Outbound link from the signaling relay to the browser automation engine.

A single WebSocket connection, kept up by a standing reconnect loop with a
fixed backoff. While it is down every ``send`` fails fast with
``UnavailableError`` instead of queueing.
"""
import asyncio
import json
import logging
from typing import Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from cobrowse.config import ENGINE_RECONNECT_SECONDS, ENGINE_WS_URL
from cobrowse.errors import UnavailableError

logger = logging.getLogger(__name__)

MAX_MESSAGE_SIZE = 8 * 1024 * 1024  # frames are base64 JPEGs
OPEN_TIMEOUT = 5


class EngineLink:
    def __init__(
        self,
        url: str = ENGINE_WS_URL,
        reconnect_seconds: float = ENGINE_RECONNECT_SECONDS,
        on_message: Optional[Callable[[str, dict], None]] = None,
        on_disconnect: Optional[Callable[[], None]] = None,
    ):
        self.url = url
        self.reconnect_seconds = reconnect_seconds
        self.on_message = on_message
        self.on_disconnect = on_disconnect
        self._ws = None
        self._task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def send(self, message: dict) -> None:
        if self._ws is None:
            raise UnavailableError("Browser service not available")
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as e:
            raise UnavailableError("Browser service not available") from e

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                async with websockets.connect(
                    self.url,
                    max_size=MAX_MESSAGE_SIZE,
                    open_timeout=OPEN_TIMEOUT,
                    ping_interval=20,
                    ping_timeout=20,
                ) as ws:
                    self._ws = ws
                    logger.info(f"Connected to browser service at {self.url}")
                    async for raw in ws:
                        self._dispatch(raw)
                logger.warning("Browser service closed the connection")
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                logger.warning(f"Browser service connection failed: {e}")
            finally:
                if self._ws is not None:
                    self._ws = None
                    if self.on_disconnect:
                        self.on_disconnect()

            await asyncio.sleep(self.reconnect_seconds)

    def _dispatch(self, raw) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Dropping malformed message from browser service")
            return
        if not isinstance(message, dict) or not isinstance(message.get("event"), str):
            return
        data = message.get("data")
        if self.on_message:
            self.on_message(message["event"], data if isinstance(data, dict) else {})
