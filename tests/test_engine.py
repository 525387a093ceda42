import asyncio

import pytest

from cobrowse import engine as engine_module
from cobrowse.channel import ChannelClosed
from cobrowse.drivers import DriverTier
from cobrowse.errors import NavigationError, NavigationTimeout, NegotiationError


async def test_initialize_uses_first_working_tier(make_engine, primary):
    engine = make_engine()

    tier = await engine.initialize()

    assert tier is DriverTier.PRIMARY
    assert engine.ready
    assert engine.title == "Title of https://start.test/"
    assert primary.calls == ["start", "navigate https://start.test/"]


async def test_initialize_falls_back_to_secondary(make_engine, primary, secondary):
    primary.fail_start = True
    engine = make_engine()

    assert await engine.initialize() is DriverTier.SECONDARY
    assert engine.state == "secondary"
    assert secondary.drivers[0].closed is False


async def test_initialize_falls_back_to_mock(make_engine, primary, secondary):
    primary.fail_start = secondary.fail_start = True
    engine = make_engine()

    assert await engine.initialize() is DriverTier.MOCK

    frame = await engine.screenshot()
    assert frame.media_type == "image/svg+xml"
    assert b"https://start.test/" in frame.data


async def test_navigate_records_state_and_history(make_engine):
    engine = make_engine()
    await engine.initialize()

    info = await engine.navigate("https://a.test/")
    await engine.navigate("https://b.test/")

    assert info.title == "Title of https://a.test/"
    assert engine.current_url == "https://b.test/"
    assert engine.history == ["https://a.test/", "https://b.test/"]
    assert engine.page_info()["canGoBack"] is True
    assert engine.page_info()["canGoForward"] is False


async def test_back_and_forward(make_engine):
    engine = make_engine()
    await engine.navigate("https://a.test/")
    await engine.navigate("https://b.test/")

    back = await engine.go_back()
    assert back.url == "https://a.test/"
    assert engine.current_url == "https://a.test/"
    assert await engine.go_back() is None

    forward = await engine.go_forward()
    assert forward.url == "https://b.test/"
    assert await engine.go_forward() is None


async def test_navigate_after_back_truncates_forward_history(make_engine):
    engine = make_engine()
    await engine.navigate("https://a.test/")
    await engine.navigate("https://b.test/")
    await engine.go_back()

    await engine.navigate("https://c.test/")

    assert engine.history == ["https://a.test/", "https://c.test/"]
    assert engine.page_info()["canGoForward"] is False


async def test_navigate_retries_once_after_reinitializing(make_engine, primary):
    engine = make_engine()
    await engine.initialize()
    primary.navigate_failures = 1

    info = await engine.navigate("https://a.test/")

    assert info.url == "https://a.test/"
    assert len(primary.drivers) == 2
    assert primary.drivers[0].closed is True


async def test_navigate_fails_after_second_error(make_engine, primary):
    engine = make_engine()
    await engine.initialize()
    # the navigate, the reload of the current page after re-init, the retry
    primary.navigate_failures = 3

    with pytest.raises(NavigationError):
        await engine.navigate("https://a.test/")

    assert engine.history == []


async def test_navigate_hard_timeout(make_engine, primary, monkeypatch):
    monkeypatch.setattr(engine_module, "NAVIGATE_HARD_TIMEOUT", 0.05)
    engine = make_engine()
    await engine.initialize()
    primary.delay = 0.5

    with pytest.raises(NavigationTimeout) as exc:
        await engine.navigate("https://slow.test/")

    assert exc.value.status_code == 504


async def test_cancelled_launch_closes_the_driver(make_engine, primary, monkeypatch):
    monkeypatch.setattr(engine_module, "NAVIGATE_HARD_TIMEOUT", 0.05)
    primary.start_delay = 1.0
    engine = make_engine()

    with pytest.raises(NavigationTimeout):
        await engine.navigate("https://a.test/")

    assert primary.drivers[0].closed is True
    assert engine.state == "uninitialized"


async def test_navigate_falls_back_when_primary_breaks(make_engine, primary, secondary):
    engine = make_engine()
    await engine.initialize()
    primary.navigate_failures = 1
    primary.fail_start = secondary.fail_start = True

    info = await engine.navigate("https://a.test/")

    assert info.url == "https://a.test/"
    assert engine.state == "mock"
    assert engine.history == ["https://a.test/"]
    assert primary.drivers[0].closed is True

    frame = await engine.screenshot()
    assert frame.media_type == "image/svg+xml"
    assert b"https://a.test/" in frame.data



async def test_first_request_initializes_lazily(make_engine, primary):
    engine = make_engine()
    assert engine.state == "uninitialized"

    await engine.navigate("https://a.test/")

    assert engine.state == "primary"
    assert primary.calls[0] == "start"


async def test_screenshot_returns_jpeg(make_engine):
    engine = make_engine()

    frame = await engine.screenshot()

    assert frame.media_type == "image/jpeg"


async def test_screenshot_retries_after_reinit(make_engine, primary):
    engine = make_engine()
    await engine.initialize()
    primary.screenshot_failures = 1

    frame = await engine.screenshot()

    assert frame.media_type == "image/jpeg"
    assert len(primary.drivers) == 2


async def test_screenshot_placeholder_faults_session(make_engine, primary):
    engine = make_engine()
    await engine.navigate("https://a.test/")
    primary.screenshot_failures = 2

    frame = await engine.screenshot()

    assert frame.media_type == "image/svg+xml"
    assert b"https://a.test/" in frame.data
    assert engine.state == "uninitialized"

    # next request brings the session back
    assert (await engine.screenshot()).media_type == "image/jpeg"
    assert engine.state == "primary"


async def test_content_navigates_to_requested_url(make_engine):
    engine = make_engine()

    html = await engine.content("https://a.test/")

    assert "Title of https://a.test/" in html
    assert engine.current_url == "https://a.test/"


async def test_content_for_new_url_has_hard_timeout(make_engine, primary, monkeypatch):
    monkeypatch.setattr(engine_module, "NAVIGATE_HARD_TIMEOUT", 0.05)
    engine = make_engine()
    await engine.initialize()
    primary.delay = 0.5

    with pytest.raises(NavigationTimeout):
        await engine.content("https://slow.test/")

    assert engine.history == []



async def test_operations_are_serialized(make_engine, primary):
    engine = make_engine()
    await engine.initialize()
    primary.delay = 0.02

    await asyncio.gather(
        engine.navigate("https://a.test/"),
        engine.screenshot(),
        engine.navigate("https://b.test/"),
        engine.screenshot(),
    )

    assert primary.max_active == 1


async def test_negotiate_rejects_invalid_offer(mock_engine):
    with pytest.raises(NegotiationError):
        mock_engine.negotiate("viewer-1", {"type": "answer", "sdp": "v=0"}, lambda message: None)
    with pytest.raises(NegotiationError):
        mock_engine.negotiate("viewer-1", {"type": "offer"}, lambda message: None)

    assert mock_engine.peers == {}


async def test_streaming_pushes_frames(mock_engine):
    frames = []
    answer = mock_engine.negotiate("viewer-1", {"type": "offer", "sdp": "v=0"}, frames.append)
    assert answer["type"] == "answer"

    assert mock_engine.add_ice_candidate("viewer-1", {"candidate": "c"}) is True
    assert mock_engine.start_streaming("viewer-1") is True
    await asyncio.sleep(0.1)
    await mock_engine.stop_streaming("viewer-1")

    assert frames
    assert frames[0]["event"] == "browser-frame"
    assert frames[0]["data"]["clientId"] == "viewer-1"
    assert frames[0]["data"]["mediaType"] == "image/svg+xml"
    assert mock_engine.peers == {}


async def test_streaming_stops_when_transport_closes(mock_engine):
    def send(message):
        raise ChannelClosed("relay")

    mock_engine.negotiate("viewer-1", {"type": "offer", "sdp": "v=0"}, send)
    mock_engine.start_streaming("viewer-1")
    await asyncio.sleep(0.05)

    assert "viewer-1" not in mock_engine.peers


async def test_ice_for_unknown_peer(mock_engine):
    assert mock_engine.add_ice_candidate("nobody", {"candidate": "c"}) is False
    assert mock_engine.start_streaming("nobody") is False


async def test_shutdown_closes_driver_and_peers(make_engine, primary):
    engine = make_engine()
    engine.negotiate("viewer-1", {"type": "offer", "sdp": "v=0"}, lambda message: None)
    engine.start_streaming("viewer-1")
    await asyncio.sleep(0.02)

    await engine.shutdown()

    assert engine.peers == {}
    assert engine.state == "uninitialized"
    assert all(driver.closed for driver in primary.drivers)
