import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Set

from fastapi import APIRouter, Depends, Query, Request, WebSocket
from fastapi.responses import HTMLResponse, Response

from cobrowse.channel import Channel, ChannelClosed
from cobrowse.engine import BrowserEngine
from cobrowse.errors import CobrowseError, NegotiationError, ValidationError
from cobrowse.models import ExecuteRequest, NavigateRequest, envelope

logger = logging.getLogger(__name__)

router = APIRouter(tags=["browser"])


def get_engine(request: Request) -> BrowserEngine:
    return request.app.state.engine


def _result(engine: BrowserEngine, moved: bool = True) -> dict:
    return {"success": moved, "url": engine.current_url, "title": engine.title}


# -----------------------------
# HTTP surface
# -----------------------------
@router.get("/health")
async def health(engine: BrowserEngine = Depends(get_engine)):
    return {
        "status": "ok",
        "browserReady": engine.ready,
        "tier": engine.state,
        "currentUrl": engine.current_url,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/page")
async def page(engine: BrowserEngine = Depends(get_engine)):
    return engine.page_info()


@router.post("/navigate")
async def navigate(request: NavigateRequest, engine: BrowserEngine = Depends(get_engine)):
    if not request.url or not request.url.strip():
        raise ValidationError("URL is required")
    info = await engine.navigate(request.url.strip())
    return {"success": True, "url": info.url, "title": info.title}


@router.post("/back")
async def back(engine: BrowserEngine = Depends(get_engine)):
    info = await engine.go_back()
    return _result(engine, info is not None)


@router.post("/forward")
async def forward(engine: BrowserEngine = Depends(get_engine)):
    info = await engine.go_forward()
    return _result(engine, info is not None)


@router.post("/refresh")
async def refresh(engine: BrowserEngine = Depends(get_engine)):
    await engine.refresh()
    return _result(engine)


@router.get("/screenshot")
async def screenshot(engine: BrowserEngine = Depends(get_engine)):
    """Current viewport: a JPEG from a rendering tier, an SVG placeholder otherwise."""
    frame = await engine.screenshot()
    return Response(content=frame.data, media_type=frame.media_type, headers={"Cache-Control": "no-store"})


@router.get("/content", response_class=HTMLResponse)
async def content(url: Optional[str] = Query(None), engine: BrowserEngine = Depends(get_engine)):
    return HTMLResponse(await engine.content(url))


@router.post("/execute")
async def execute(request: ExecuteRequest):
    # Scripts are never run against the shared session; the reply only echoes them.
    if not request.script:
        raise ValidationError("Script is required")
    return {"success": True, "result": f"Executed: {request.script[:50]}..."}


# -----------------------------
# Relay link
# -----------------------------
NAVIGATION_EVENTS = ("navigate", "refresh", "back", "forward")


@router.websocket("/ws/relay")
async def relay_socket(websocket: WebSocket):
    """Endpoint the signaling relay keeps connected.

    Viewers are multiplexed over this one socket by ``clientId``; every
    streaming peer negotiated through it dies with it.
    """
    engine: BrowserEngine = websocket.app.state.engine
    await websocket.accept()
    channel = Channel(websocket)
    owned: Set[str] = set()
    tasks: Set[asyncio.Task] = set()
    logger.info(f"Relay connected: {channel.id}")

    def reply(event: str, data: dict) -> None:
        try:
            channel.send(envelope(event, data))
        except ChannelClosed:
            logger.debug(f"Relay gone, dropping {event}")

    async def run_navigation(event: str, client_id: Optional[str], url: Optional[str]) -> None:
        try:
            if event == "navigate":
                if not url:
                    raise ValidationError("URL is required")
                await engine.navigate(url)
            elif event == "refresh":
                await engine.refresh()
            elif event == "back":
                await engine.go_back()
            elif event == "forward":
                await engine.go_forward()
        except CobrowseError as e:
            logger.error(f"{event} from {client_id} failed: {e.message}")
            reply("error", {"message": e.message, "clientId": client_id})
            return
        reply("navigated", {"clientId": client_id, "url": engine.current_url, "title": engine.title})

    async def handle(ch: Channel, event: str, data: dict) -> None:
        client_id = data.get("clientId")

        if event == "webrtc-offer":
            if not client_id:
                reply("error", {"message": "clientId is required"})
                return
            try:
                answer = engine.negotiate(client_id, data.get("offer"), ch.send)
            except NegotiationError as e:
                reply("error", {"message": e.message, "clientId": client_id})
                return
            owned.add(client_id)
            reply("webrtc-answer", {"answer": answer, "clientId": client_id})
            engine.start_streaming(client_id)

        elif event == "webrtc-ice-candidate":
            if client_id:
                engine.add_ice_candidate(client_id, data.get("candidate"))

        elif event in NAVIGATION_EVENTS:
            task = asyncio.create_task(run_navigation(event, client_id, data.get("url")))
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        elif event == "client-disconnected":
            if client_id:
                owned.discard(client_id)
                await engine.stop_streaming(client_id)

        else:
            logger.info(f"Ignoring unknown relay event '{event}'")

    try:
        await channel.serve(handle)
    finally:
        logger.info(f"Relay disconnected: {channel.id}")
        for task in list(tasks):
            task.cancel()
        for client_id in list(owned):
            await engine.stop_streaming(client_id)
