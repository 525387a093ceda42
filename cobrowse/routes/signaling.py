import logging

from fastapi import APIRouter, Depends, Request, WebSocket

from cobrowse.channel import Channel
from cobrowse.relay import SignalingRelay

logger = logging.getLogger(__name__)

router = APIRouter(tags=["signaling"])


def get_relay(request: Request) -> SignalingRelay:
    return request.app.state.relay


@router.get("/health")
async def health(relay: SignalingRelay = Depends(get_relay)):
    return relay.health()


@router.get("/stats")
async def stats(relay: SignalingRelay = Depends(get_relay)):
    return relay.stats()


@router.websocket("/ws")
async def room_socket(websocket: WebSocket):
    """Room membership, WebRTC signalling and control relay for one client."""
    relay: SignalingRelay = websocket.app.state.relay
    await websocket.accept()
    channel = Channel(websocket)
    relay.connect(channel)
    try:
        await channel.serve(relay.handle)
    finally:
        relay.disconnect(channel)


@router.websocket("/ws/browser-webrtc")
async def viewer_socket(websocket: WebSocket):
    """Browser viewer: proxied to the automation engine over the relay link."""
    relay: SignalingRelay = websocket.app.state.relay
    await websocket.accept()
    channel = Channel(websocket)
    relay.connect_viewer(channel)
    try:
        await channel.serve(relay.handle_viewer)
    finally:
        await relay.disconnect_viewer(channel)
