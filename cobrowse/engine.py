"""The shared browser session and the frame streaming built on top of it.

There is exactly one ``BrowserEngine`` per process and every client reads the
same session. Every call that touches the driver goes through ``_gate`` so a
frame can never be captured half-way through a navigation.

State machine::

    Uninitialized -> Ready[primary | secondary | httpFallback | mock]
    Ready[*] -> Uninitialized      (driver reports a fatal error)

Initialisation walks ``DRIVER_TIERS`` in order; it happens eagerly at start-up
and lazily on the next request after a fault, never in the background.
"""
import asyncio
import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from cobrowse.config import ENGINE_START_URL, STREAM_INTERVAL_SECONDS
from cobrowse.drivers import (
    DRIVER_TIERS,
    BrowserDriver,
    DriverFactory,
    DriverTier,
    Frame,
    info_page,
    placeholder_frame,
)
from cobrowse.errors import (
    CobrowseError,
    DriverError,
    NavigationError,
    NavigationTimeout,
    NegotiationError,
    UnavailableError,
)
from cobrowse.models import PageInfo, envelope

logger = logging.getLogger(__name__)

DRIVER_START_TIMEOUT = 30.0
NAVIGATE_HARD_TIMEOUT = 35.0
SCREENSHOT_TIMEOUT = 8.0
SCREENSHOT_RETRY_TIMEOUT = 5.0
CONTENT_TIMEOUT = 15.0

RENDERING_TIERS = (DriverTier.PRIMARY, DriverTier.SECONDARY)


@dataclass
class StreamingPeer:
    client_id: str
    send: Callable[[dict], None]
    ice_candidates: List[Any] = field(default_factory=list)
    task: Optional[asyncio.Task] = None


class BrowserEngine:
    def __init__(
        self,
        tiers: Sequence[Tuple[DriverTier, DriverFactory]] = DRIVER_TIERS,
        start_url: str = ENGINE_START_URL,
        stream_interval: float = STREAM_INTERVAL_SECONDS,
    ):
        self.tiers = list(tiers)
        self.stream_interval = stream_interval
        self.tier: Optional[DriverTier] = None
        self.current_url = start_url
        self.title = ""
        self.history: List[str] = []
        self.history_index = -1
        self.peers: Dict[str, StreamingPeer] = {}
        self._driver: Optional[BrowserDriver] = None
        self._gate = asyncio.Lock()

    @property
    def ready(self) -> bool:
        return self._driver is not None

    @property
    def state(self) -> str:
        return self.tier.value if self.tier else "uninitialized"

    @property
    def can_go_back(self) -> bool:
        return self.history_index > 0

    @property
    def can_go_forward(self) -> bool:
        return self.history_index < len(self.history) - 1

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def initialize(self) -> DriverTier:
        async with self._gate:
            return await self._initialize_locked()

    async def shutdown(self) -> None:
        await self.close_all_peers()
        async with self._gate:
            await self._teardown_locked()

    async def _initialize_locked(self, force: bool = False) -> DriverTier:
        if self._driver is not None and not self._driver.healthy:
            await self._fault_locked("driver reported unhealthy")
        if self._driver is not None and not force:
            return self.tier

        await self._teardown_locked()
        for tier, factory in self.tiers:
            driver = factory()
            try:
                await asyncio.wait_for(driver.start(), DRIVER_START_TIMEOUT)
            except asyncio.CancelledError:
                await self._close_driver(driver)
                raise
            except Exception as e:
                logger.warning(f"{tier.value} driver failed to start: {e}")
                await self._close_driver(driver)
                continue

            self._driver, self.tier = driver, tier
            logger.info(f"Browser session ready on {tier.value} tier")
            await self._load_current_locked()
            return tier

        raise UnavailableError("No browser driver could be started")

    async def _load_current_locked(self) -> None:
        try:
            info = await self._drive(self._driver.navigate(self.current_url), self._driver.navigate_timeout)
        except DriverError as e:
            logger.warning(f"Initial load of {self.current_url} failed: {e}")
            return
        self.current_url, self.title = info.url, info.title

    async def _fault_locked(self, reason: str) -> None:
        logger.error(f"Browser session fault on {self.state} tier: {reason}")
        await self._teardown_locked()

    async def _teardown_locked(self) -> None:
        if self._driver is None:
            return
        driver, self._driver, self.tier = self._driver, None, None
        await self._close_driver(driver)

    @staticmethod
    async def _close_driver(driver: BrowserDriver) -> None:
        # Runs to completion even when the caller is cancelled.
        try:
            await asyncio.shield(driver.close())
        except Exception as e:
            logger.warning(f"Error closing {driver.tier.value} driver: {e}")

    @staticmethod
    async def _drive(call: Awaitable, timeout: float):
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as e:
            raise DriverError(f"timed out after {timeout}s") from e

    # -----------------------------
    # Navigation
    # -----------------------------
    async def navigate(self, url: str) -> PageInfo:
        return await self._bounded(self._navigate(url), url)

    async def go_back(self) -> Optional[PageInfo]:
        return await self._bounded(self._step_history(-1), "back")

    async def go_forward(self) -> Optional[PageInfo]:
        return await self._bounded(self._step_history(1), "forward")

    async def refresh(self) -> PageInfo:
        return await self._bounded(self._refresh(), self.current_url)

    def page_info(self) -> dict:
        return {
            "title": self.title,
            "url": self.current_url,
            "currentUrl": self.current_url,
            "canGoBack": self.can_go_back,
            "canGoForward": self.can_go_forward,
            "tier": self.state,
        }

    async def _bounded(self, call: Awaitable, target: str):
        # Covers waiting on the gate too, so no caller waits longer than this.
        try:
            return await asyncio.wait_for(call, NAVIGATE_HARD_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error(f"Navigation ({target}) exceeded {NAVIGATE_HARD_TIMEOUT}s")
            raise NavigationTimeout("Navigation timeout")

    async def _navigate(self, url: str) -> PageInfo:
        async with self._gate:
            info = await self._navigate_locked(url)
            self._push_history(info.url)
            return info

    async def _step_history(self, step: int) -> Optional[PageInfo]:
        async with self._gate:
            index = self.history_index + step
            if index < 0 or index >= len(self.history):
                return None
            info = await self._navigate_locked(self.history[index])
            self.history_index = index
            return info

    async def _refresh(self) -> PageInfo:
        async with self._gate:
            return await self._navigate_locked(self.current_url)

    async def _navigate_locked(self, url: str) -> PageInfo:
        await self._initialize_locked()
        try:
            info = await self._drive(self._driver.navigate(url), self._driver.navigate_timeout)
        except DriverError as e:
            logger.warning(f"Navigation to {url} failed on {self.state} tier ({e}), re-initializing")
            await self._initialize_locked(force=True)
            try:
                info = await self._drive(self._driver.navigate(url), self._driver.navigate_timeout)
            except DriverError as retry_error:
                logger.error(f"Navigation to {url} failed after re-initialization: {retry_error}")
                raise NavigationError(f"Navigation failed: {retry_error}") from retry_error

        self.current_url, self.title = info.url, info.title
        logger.info(f"Navigated to: {self.current_url} ({self.state})")
        return info

    def _push_history(self, url: str) -> None:
        self.history = self.history[: self.history_index + 1]
        self.history.append(url)
        self.history_index = len(self.history) - 1

    # -----------------------------
    # Capture
    # -----------------------------
    async def screenshot(self) -> Frame:
        async with self._gate:
            return await self._screenshot_locked()

    async def _screenshot_locked(self) -> Frame:
        await self._initialize_locked()
        if self.tier not in RENDERING_TIERS:
            return await self._driver.screenshot()

        try:
            return await self._drive(self._driver.screenshot(), SCREENSHOT_TIMEOUT)
        except DriverError as e:
            logger.warning(f"Screenshot failed on {self.state} tier ({e}), re-initializing")

        await self._initialize_locked(force=True)
        if self.tier in RENDERING_TIERS:
            try:
                return await self._drive(self._driver.screenshot(), SCREENSHOT_RETRY_TIMEOUT)
            except DriverError as e:
                await self._fault_locked(f"screenshot retry failed: {e}")
        return placeholder_frame(self.current_url)

    async def content(self, url: Optional[str] = None) -> str:
        return await self._bounded(self._content(url), url or self.current_url)

    async def _content(self, url: Optional[str]) -> str:
        async with self._gate:
            if url and url != self.current_url:
                info = await self._navigate_locked(url)
                self._push_history(info.url)
            else:
                await self._initialize_locked()
            try:
                return await self._drive(self._driver.content(), CONTENT_TIMEOUT)
            except DriverError as e:
                logger.warning(f"Reading content failed on {self.state} tier: {e}")
                return info_page(self.current_url, self.title)

    # -----------------------------
    # Streaming peers
    # -----------------------------
    def negotiate(self, client_id: str, offer: Any, send: Callable[[dict], None]) -> dict:
        """Accept a viewer's offer and register it as a streaming peer.

        Frames travel back over the relay link as ``browser-frame`` events, so
        the answer describes that transport. An invalid offer registers nothing.
        """
        if not isinstance(offer, dict) or offer.get("type") != "offer" or not offer.get("sdp"):
            raise NegotiationError("Invalid WebRTC offer")

        previous = self.peers.pop(client_id, None)
        if previous is not None and previous.task is not None:
            previous.task.cancel()

        self.peers[client_id] = StreamingPeer(client_id=client_id, send=send)
        logger.info(f"Streaming peer negotiated: {client_id}")
        return {
            "type": "answer",
            "transport": "relay-frames",
            "intervalMs": int(self.stream_interval * 1000),
        }

    def add_ice_candidate(self, client_id: str, candidate: Any) -> bool:
        peer = self.peers.get(client_id)
        if peer is None:
            return False
        peer.ice_candidates.append(candidate)
        return True

    def start_streaming(self, client_id: str) -> bool:
        peer = self.peers.get(client_id)
        if peer is None:
            logger.info(f"No streaming peer for client: {client_id}")
            return False
        if peer.task is None or peer.task.done():
            peer.task = asyncio.create_task(self._stream_loop(peer))
        return True

    async def stop_streaming(self, client_id: str) -> None:
        peer = self.peers.pop(client_id, None)
        if peer is None or peer.task is None:
            return
        peer.task.cancel()
        try:
            await peer.task
        except asyncio.CancelledError:
            pass
        logger.info(f"Streaming stopped for client: {client_id}")

    async def close_all_peers(self) -> None:
        for client_id in list(self.peers):
            await self.stop_streaming(client_id)

    async def _stream_loop(self, peer: StreamingPeer) -> None:
        logger.info(f"Screenshot streaming started for client: {peer.client_id}")
        try:
            while True:
                try:
                    frame = await self.screenshot()
                except CobrowseError as e:
                    logger.warning(f"Frame capture for {peer.client_id} failed: {e.message}")
                    await asyncio.sleep(self.stream_interval)
                    continue
                peer.send(envelope("browser-frame", {
                    "clientId": peer.client_id,
                    "imageData": base64.b64encode(frame.data).decode("utf-8"),
                    "mediaType": frame.media_type,
                    "timestamp": int(time.time() * 1000),
                }))
                await asyncio.sleep(self.stream_interval)
        except ConnectionError as e:
            logger.info(f"Frame transport closed for {peer.client_id}: {e}")
            if self.peers.get(peer.client_id) is peer:
                del self.peers[peer.client_id]
