"""Shared pytest fixtures for cobrowse tests.

Engine tests swap the real Playwright/httpx tiers for ``FakeTier`` factories,
relay tests use in-memory channels and a fake engine link.
"""
import asyncio
from typing import List, Optional

import pytest

from cobrowse.channel import ChannelClosed
from cobrowse.drivers import BrowserDriver, DriverTier, Frame, MockDriver
from cobrowse.engine import BrowserEngine
from cobrowse.errors import DriverError, UnavailableError
from cobrowse.models import PageInfo
from cobrowse.relay import SignalingRelay
from cobrowse.rooms import RoomManager


# ============================================================================
# Engine fakes
# ============================================================================

class FakeTier:
    """Driver factory whose failures survive re-initialisation."""

    def __init__(
        self,
        tier: DriverTier,
        fail_start: bool = False,
        navigate_failures: int = 0,
        screenshot_failures: int = 0,
        delay: float = 0.0,
        start_delay: float = 0.0,
    ):
        self.tier = tier
        self.fail_start = fail_start
        self.navigate_failures = navigate_failures
        self.screenshot_failures = screenshot_failures
        self.delay = delay
        self.start_delay = start_delay
        self.drivers: List["FakeDriver"] = []
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0

    def __call__(self) -> "FakeDriver":
        driver = FakeDriver(self)
        self.drivers.append(driver)
        return driver


class FakeDriver(BrowserDriver):
    navigate_timeout = 1.0

    def __init__(self, factory: FakeTier):
        super().__init__(factory.tier)
        self.factory = factory
        self.closed = False

    async def start(self) -> None:
        self.factory.calls.append("start")
        if self.factory.start_delay:
            await asyncio.sleep(self.factory.start_delay)
        if self.factory.fail_start:
            raise DriverError("launch failed")

    async def navigate(self, url: str) -> PageInfo:
        await self._busy(f"navigate {url}")
        if self.factory.navigate_failures > 0:
            self.factory.navigate_failures -= 1
            raise DriverError("net::ERR_FAILED")
        self.url = url
        self.title = f"Title of {url}"
        return PageInfo(url=url, title=self.title)

    async def screenshot(self) -> Frame:
        await self._busy("screenshot")
        if self.factory.screenshot_failures > 0:
            self.factory.screenshot_failures -= 1
            raise DriverError("Target closed")
        return Frame(data=b"\xff\xd8jpeg", media_type="image/jpeg")

    async def content(self) -> str:
        return f"<html><title>{self.title}</title></html>"

    async def close(self) -> None:
        self.closed = True

    async def _busy(self, call: str) -> None:
        self.factory.calls.append(call)
        self.factory.active += 1
        self.factory.max_active = max(self.factory.max_active, self.factory.active)
        try:
            if self.factory.delay:
                await asyncio.sleep(self.factory.delay)
        finally:
            self.factory.active -= 1


@pytest.fixture
def primary() -> FakeTier:
    return FakeTier(DriverTier.PRIMARY)


@pytest.fixture
def secondary() -> FakeTier:
    return FakeTier(DriverTier.SECONDARY)


@pytest.fixture
def make_engine(primary: FakeTier, secondary: FakeTier):
    def _make(**kwargs) -> BrowserEngine:
        tiers = [
            (DriverTier.PRIMARY, primary),
            (DriverTier.SECONDARY, secondary),
            (DriverTier.MOCK, MockDriver),
        ]
        return BrowserEngine(tiers=tiers, start_url="https://start.test/", stream_interval=0.01, **kwargs)

    return _make


@pytest.fixture
def mock_engine() -> BrowserEngine:
    """Engine that can only ever reach the mock tier."""
    return BrowserEngine(
        tiers=[(DriverTier.MOCK, MockDriver)],
        start_url="https://www.google.com",
        stream_interval=0.01,
    )


# ============================================================================
# Relay fakes
# ============================================================================

class FakeChannel:
    def __init__(self, channel_id: str):
        self.id = channel_id
        self.closed = False
        self.sent: List[dict] = []

    def send(self, message: dict) -> None:
        if self.closed:
            raise ChannelClosed(self.id)
        self.sent.append(message)

    def events(self) -> List[str]:
        return [m["event"] for m in self.sent]

    def last(self, event: str) -> Optional[dict]:
        for message in reversed(self.sent):
            if message["event"] == event:
                return message["data"]
        return None

    def clear(self) -> None:
        self.sent.clear()


class FakeEngineLink:
    url = "ws://engine.test/ws/relay"

    def __init__(self, connected: bool = True):
        self.connected = connected
        self.sent: List[dict] = []
        self.on_message = None
        self.on_disconnect = None
        self.started = False

    async def send(self, message: dict) -> None:
        if not self.connected:
            raise UnavailableError("Browser service not available")
        self.sent.append(message)

    def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False


@pytest.fixture
def rooms() -> RoomManager:
    manager = RoomManager(grace_seconds=60, inactivity_timeout=1800)
    yield manager
    manager.close()


@pytest.fixture
def engine_link() -> FakeEngineLink:
    return FakeEngineLink()


@pytest.fixture
def relay(rooms: RoomManager, engine_link: FakeEngineLink) -> SignalingRelay:
    return SignalingRelay(rooms, engine_link, heartbeat_interval=3600)


@pytest.fixture
def connect(relay: SignalingRelay):
    """Register a fake room client with the relay."""

    def _connect(channel_id: str) -> FakeChannel:
        channel = FakeChannel(channel_id)
        relay.connect(channel)
        return channel

    return _connect


@pytest.fixture
def connect_viewer(relay: SignalingRelay):
    """Register a fake browser viewer with the relay."""

    def _connect(channel_id: str) -> FakeChannel:
        channel = FakeChannel(channel_id)
        relay.connect_viewer(channel)
        return channel

    return _connect
