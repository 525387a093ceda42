"""Signaling relay: room events, WebRTC signal routing and the viewer sub-channel.

Room clients talk to the relay on ``/ws``; browser viewers talk to it on
``/ws/browser-webrtc`` and are proxied to the automation engine over a single
``EngineLink``. Every handler runs on the event loop and finishes its room
mutation before it enqueues any outbound message, so members of one room see
events in the order the relay processed them.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from functools import partial
from typing import Awaitable, Callable, Dict, Optional, Set, Tuple, Type

from pydantic import ValidationError as PydanticValidationError

from cobrowse.channel import Channel, ChannelClosed
from cobrowse.config import HEARTBEAT_INTERVAL_SECONDS
from cobrowse.engine_link import EngineLink
from cobrowse.errors import JoinRoomError, UnavailableError
from cobrowse.models import (
    Command,
    ControlCommand,
    CreateRoomCommand,
    IceCandidateCommand,
    JoinRoomCommand,
    NavigateCommand,
    OfferCommand,
    Room,
    SignalCommand,
    UrlChangeCommand,
    envelope,
)
from cobrowse.rooms import RoomManager

logger = logging.getLogger(__name__)

UNAVAILABLE = "Browser service not available"

Handler = Callable[[Channel, Optional[Command]], Awaitable[None]]
Route = Tuple[Optional[Type[Command]], Handler, str]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _reply(channel: Channel, event: str, data: dict) -> None:
    try:
        channel.send(envelope(event, data))
    except ChannelClosed:
        logger.debug(f"Dropping {event} for closed channel {channel.id}")


class SignalingRelay:
    def __init__(
        self,
        rooms: RoomManager,
        engine_link: EngineLink,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
    ):
        self.rooms = rooms
        self.engine_link = engine_link
        self.heartbeat_interval = heartbeat_interval
        self.clients: Dict[str, Channel] = {}
        self.viewers: Dict[str, Channel] = {}
        self._pending_offers: Set[str] = set()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

        engine_link.on_message = self.route_engine_message
        engine_link.on_disconnect = self.engine_disconnected

        self._room_routes: Dict[str, Route] = {
            "create-room": (CreateRoomCommand, self._on_create_room, "Failed to create room"),
            "join-room": (JoinRoomCommand, self._on_join_room, "Failed to join room"),
            "leave-room": (None, self._on_leave_room, "Failed to leave room"),
            "webrtc-offer": (SignalCommand, partial(self._on_signal, "webrtc-offer"), "Failed to relay offer"),
            "webrtc-answer": (SignalCommand, partial(self._on_signal, "webrtc-answer"), "Failed to relay answer"),
            "webrtc-ice-candidate": (
                SignalCommand,
                partial(self._on_signal, "webrtc-ice-candidate"),
                "Failed to relay ICE candidate",
            ),
            "control": (ControlCommand, self._on_control, "Failed to relay control message"),
            "url-change": (UrlChangeCommand, self._on_url_change, "Failed to change URL"),
        }
        self._viewer_routes: Dict[str, Route] = {
            "webrtc-offer": (OfferCommand, self._on_viewer_offer, "Failed to process WebRTC offer"),
            "webrtc-ice-candidate": (IceCandidateCommand, self._on_viewer_ice, "Failed to forward ICE candidate"),
            "navigate": (NavigateCommand, partial(self._forward_viewer, "navigate"), "Failed to navigate"),
            "refresh": (None, partial(self._forward_viewer, "refresh"), "Failed to refresh"),
            "back": (None, partial(self._forward_viewer, "back"), "Failed to go back"),
            "forward": (None, partial(self._forward_viewer, "forward"), "Failed to go forward"),
        }

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def start(self) -> None:
        self._shutdown_event.clear()
        self.engine_link.start()
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        self._shutdown_event.set()
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        await self.engine_link.stop()
        self.rooms.close()

    def stats(self) -> dict:
        return {"connectedSockets": len(self.clients), **self.rooms.stats()}

    def health(self) -> dict:
        return {
            "status": "ok",
            "engineConnected": self.engine_link.connected,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # -----------------------------
    # Dispatch
    # -----------------------------
    async def handle(self, channel: Channel, event: str, data: dict) -> None:
        await self._dispatch(self._room_routes, channel, event, data)

    async def handle_viewer(self, channel: Channel, event: str, data: dict) -> None:
        await self._dispatch(self._viewer_routes, channel, event, data)

    async def _dispatch(self, routes: Dict[str, Route], channel: Channel, event: str, data: dict) -> None:
        route = routes.get(event)
        if route is None:
            logger.info(f"Ignoring unknown event '{event}' from {channel.id}")
            return

        model, handler, failure = route
        try:
            command = model.model_validate(data) if model else None
        except PydanticValidationError as e:
            logger.info(f"Invalid {event} payload from {channel.id}: {e.error_count()} error(s)")
            _reply(channel, "error", {"message": f"Invalid {event} payload"})
            return

        try:
            await handler(channel, command)
        except Exception as e:
            logger.error(f"Error handling {event} from {channel.id}: {e}")
            _reply(channel, "error", {"message": failure})

    def broadcast(self, room: Room, event: str, data: dict, exclude: Optional[str] = None) -> None:
        message = envelope(event, data)
        for user_id in room.users:
            if user_id == exclude:
                continue
            channel = self.clients.get(user_id)
            if channel is None:
                continue
            try:
                channel.send(message)
            except ChannelClosed:
                logger.debug(f"Skipping closed channel {user_id} in room {room.id}")

    # -----------------------------
    # Room clients
    # -----------------------------
    def connect(self, channel: Channel) -> None:
        self.clients[channel.id] = channel
        logger.info(f"Client connected: {channel.id}")

    def disconnect(self, channel: Channel) -> None:
        logger.info(f"Client disconnected: {channel.id}")
        # Resolve the room first; after leaving there is nothing to look up.
        room = self.rooms.get_user_room(channel.id)
        if room is not None and self.rooms.leave_room(channel.id):
            self.broadcast(room, "user-disconnected", {
                "userId": channel.id,
                "users": room.member_list(),
            })
        self.clients.pop(channel.id, None)

    async def _on_create_room(self, channel: Channel, command: CreateRoomCommand) -> None:
        kwargs = {"max_users": command.max_users} if command.max_users is not None else {}
        room = self.rooms.create_room(command.name, command.password, **kwargs)
        _reply(channel, "room-created", {"roomId": room.id, "room": room.summary()})

    async def _on_join_room(self, channel: Channel, command: JoinRoomCommand) -> None:
        previous = self.rooms.get_user_room(channel.id)
        try:
            room = self.rooms.join_room(command.room_id, channel.id, command.user_name, command.password)
        except JoinRoomError as e:
            _reply(channel, "join-error", {"message": e.message})
            return

        if previous is not None and previous.id != room.id:
            self.broadcast(previous, "user-left", {"userId": channel.id, "users": previous.member_list()})

        user = room.users[channel.id].to_wire()
        _reply(channel, "room-joined", {"roomId": room.id, "room": room.snapshot(), "user": user})
        self.broadcast(room, "user-joined", {
            "userId": channel.id,
            "user": user,
            "users": room.member_list(),
        }, exclude=channel.id)

    async def _on_leave_room(self, channel: Channel, command: None) -> None:
        room = self.rooms.get_user_room(channel.id)
        if room is None or not self.rooms.leave_room(channel.id):
            return
        self.broadcast(room, "user-left", {"userId": channel.id, "users": room.member_list()})

    async def _on_signal(self, event: str, channel: Channel, command: SignalCommand) -> None:
        target = self.clients.get(command.to)
        if target is None:
            logger.debug(f"Dropping {event} from {channel.id}: unknown target {command.to}")
            return
        _reply(target, event, {**command.model_dump(by_alias=True), "from": channel.id})

    async def _on_control(self, channel: Channel, command: ControlCommand) -> None:
        room = self.rooms.get_user_room(channel.id)
        if room is None:
            return
        self.broadcast(room, "control", {
            **command.model_dump(by_alias=True),
            "userId": channel.id,
            "timestamp": _now_ms(),
        }, exclude=channel.id)

    async def _on_url_change(self, channel: Channel, command: UrlChangeCommand) -> None:
        room = self.rooms.get_user_room(channel.id)
        if room is None:
            _reply(channel, "error", {"message": "Not in a room"})
            return
        self.rooms.update_room_url(room.id, command.url)
        self.broadcast(room, "url-changed", {"url": command.url, "changedBy": channel.id})

    # -----------------------------
    # Heartbeat
    # -----------------------------
    def heartbeat_tick(self) -> None:
        for client_id in list(self.clients):
            self.rooms.update_user_activity(client_id)

        for room_id, user_id in self.rooms.cleanup():
            room = self.rooms.get_room(room_id)
            if room is not None:
                self.broadcast(room, "user-left", {"userId": user_id, "users": room.member_list()})

    async def _heartbeat_loop(self) -> None:
        try:
            while not self._shutdown_event.is_set():
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.heartbeat_interval)
                except asyncio.TimeoutError:
                    pass
                else:
                    break

                try:
                    self.heartbeat_tick()
                except Exception as e:
                    logger.warning(f"Heartbeat error: {e}")
        except asyncio.CancelledError:
            pass

    # -----------------------------
    # Browser viewers
    # -----------------------------
    def connect_viewer(self, channel: Channel) -> None:
        self.viewers[channel.id] = channel
        logger.info(f"Browser viewer connected: {channel.id}")

    async def disconnect_viewer(self, channel: Channel) -> None:
        logger.info(f"Browser viewer disconnected: {channel.id}")
        self.viewers.pop(channel.id, None)
        self._pending_offers.discard(channel.id)
        if not self.engine_link.connected:
            return
        try:
            await self.engine_link.send(envelope("client-disconnected", {"clientId": channel.id}))
        except UnavailableError:
            # The engine drops every peer of a lost link on its own.
            logger.debug(f"Engine gone before client-disconnected for {channel.id}")

    async def _on_viewer_offer(self, channel: Channel, command: OfferCommand) -> None:
        if channel.id in self._pending_offers:
            _reply(channel, "error", {"message": "Negotiation already in progress"})
            return

        self._pending_offers.add(channel.id)
        try:
            await self.engine_link.send(envelope("webrtc-offer", {"offer": command.offer, "clientId": channel.id}))
        except UnavailableError as e:
            self._pending_offers.discard(channel.id)
            logger.error(f"Cannot forward offer from {channel.id}: {e.message}")
            _reply(channel, "error", {"message": UNAVAILABLE})

    async def _on_viewer_ice(self, channel: Channel, command: IceCandidateCommand) -> None:
        if not self.engine_link.connected:
            return
        await self.engine_link.send(envelope("webrtc-ice-candidate", {
            "candidate": command.candidate,
            "clientId": channel.id,
        }))

    async def _forward_viewer(self, event: str, channel: Channel, command: Optional[NavigateCommand]) -> None:
        data = {"clientId": channel.id}
        if command is not None:
            data["url"] = command.url
        try:
            await self.engine_link.send(envelope(event, data))
        except UnavailableError:
            logger.error(f"Cannot {event}: browser service not connected")
            _reply(channel, "error", {"message": UNAVAILABLE})

    def route_engine_message(self, event: str, data: dict) -> None:
        client_id = data.get("clientId")
        if event in ("webrtc-answer", "error"):
            self._pending_offers.discard(client_id)

        viewer = self.viewers.get(client_id) if client_id else None
        if viewer is None:
            logger.debug(f"No viewer for engine event {event} ({client_id})")
            return
        _reply(viewer, event, data)

    def engine_disconnected(self) -> None:
        logger.warning("Disconnected from browser service, reconnecting...")
        self._pending_offers.clear()
        for viewer in list(self.viewers.values()):
            _reply(viewer, "error", {"message": UNAVAILABLE})
