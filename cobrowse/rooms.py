import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from cobrowse.config import (
    DEFAULT_MAX_USERS,
    DEFAULT_ROOM_URL,
    EMPTY_ROOM_GRACE_SECONDS,
    INACTIVITY_TIMEOUT_SECONDS,
)
from cobrowse.errors import JoinErrorCode, JoinRoomError
from cobrowse.models import Room, User, utcnow

logger = logging.getLogger(__name__)


class RoomManager:
    """In-memory registry of rooms and their members.

    Only ever touched from the event loop, so each call is atomic on its own.
    ``_user_to_room`` mirrors ``Room.users`` exactly: every mutation of one
    goes through a method here that updates the other.
    """

    def __init__(
        self,
        grace_seconds: float = EMPTY_ROOM_GRACE_SECONDS,
        inactivity_timeout: float = INACTIVITY_TIMEOUT_SECONDS,
        default_url: str = DEFAULT_ROOM_URL,
    ):
        self.rooms: Dict[str, Room] = {}
        self._user_to_room: Dict[str, str] = {}
        self.grace_seconds = grace_seconds
        self.inactivity_timeout = timedelta(seconds=inactivity_timeout)
        self.default_url = default_url

    def create_room(self, name: str, password: Optional[str] = None, max_users: int = DEFAULT_MAX_USERS) -> Room:
        room = Room(
            name=name,
            password=password or None,
            current_url=self.default_url,
            max_users=max(1, int(max_users)),
        )
        self.rooms[room.id] = room
        logger.info(f"Created room: {room.id} ({name})")
        return room

    def join_room(self, room_id: str, user_id: str, user_name: str, password: Optional[str] = None) -> Room:
        """Add a user to a room. Raises JoinRoomError without touching state on failure."""
        room = self.rooms.get(room_id)
        if room is None:
            raise JoinRoomError(JoinErrorCode.NOT_FOUND)
        if room.password and room.password != password:
            raise JoinRoomError(JoinErrorCode.INVALID_PASSWORD)
        if room.is_full:
            raise JoinRoomError(JoinErrorCode.FULL)
        if user_id in room.users:
            raise JoinRoomError(JoinErrorCode.ALREADY_JOINED)

        # A connection belongs to at most one room.
        if user_id in self._user_to_room:
            self.leave_room(user_id)

        self._cancel_deletion(room)

        now = utcnow()
        room.users[user_id] = User(
            id=user_id,
            name=user_name,
            is_host=not room.users,
            joined_at=now,
            last_activity=now,
        )
        room.last_activity = now
        self._user_to_room[user_id] = room_id

        logger.info(f"User {user_name} ({user_id}) joined room {room_id}")
        return room

    def leave_room(self, user_id: str) -> bool:
        room_id = self._user_to_room.get(user_id)
        if room_id is None:
            return False
        room = self.rooms.get(room_id)
        if room is None:
            self._user_to_room.pop(user_id, None)
            return False

        self._remove_user(room, user_id)
        logger.info(f"User {user_id} left room {room_id}")

        if not room.users:
            self._schedule_deletion(room)
        return True

    # -----------------------------
    # Lookups
    # -----------------------------
    def get_room(self, room_id: str) -> Optional[Room]:
        return self.rooms.get(room_id)

    def get_user_room(self, user_id: str) -> Optional[Room]:
        room_id = self._user_to_room.get(user_id)
        return self.rooms.get(room_id) if room_id else None

    def get_room_users(self, room_id: str) -> List[User]:
        room = self.rooms.get(room_id)
        return list(room.users.values()) if room else []

    def get_active_rooms(self) -> List[Room]:
        return [room for room in self.rooms.values() if room.users]

    # -----------------------------
    # Mutations
    # -----------------------------
    def update_room_url(self, room_id: str, url: str) -> bool:
        room = self.rooms.get(room_id)
        if room is None:
            return False
        room.current_url = url
        room.last_activity = utcnow()
        return True

    def update_user_activity(self, user_id: str) -> None:
        room = self.get_user_room(user_id)
        if room is None:
            return
        now = utcnow()
        user = room.users.get(user_id)
        if user:
            user.last_activity = now
        room.last_activity = now

    def cleanup(self) -> List[Tuple[str, str]]:
        """Evict inactive users and delete empty, inactive rooms.

        Returns the ``(room_id, user_id)`` pairs that were evicted so the
        caller can tell the remaining members.
        """
        now = utcnow()
        evicted: List[Tuple[str, str]] = []

        for room_id, room in list(self.rooms.items()):
            stale = [
                user_id for user_id, user in room.users.items()
                if now - user.last_activity > self.inactivity_timeout
            ]
            for user_id in stale:
                logger.info(f"Removing inactive user {user_id} from room {room_id}")
                self._remove_user(room, user_id)
                evicted.append((room_id, user_id))

            if room.users:
                continue
            if now - room.last_activity > self.inactivity_timeout:
                logger.info(f"Deleting inactive room: {room_id}")
                self._delete_room(room_id)
            elif stale:
                self._schedule_deletion(room)

        return evicted

    def stats(self) -> dict:
        active = self.get_active_rooms()
        return {
            "activeRooms": len(active),
            "rooms": [room.summary() for room in active],
        }

    def close(self) -> None:
        for room in self.rooms.values():
            self._cancel_deletion(room)

    # -----------------------------
    # Internals
    # -----------------------------
    def _remove_user(self, room: Room, user_id: str) -> None:
        room.users.pop(user_id, None)
        self._user_to_room.pop(user_id, None)
        if room.users and room.host is None:
            self._elect_host(room)

    def _elect_host(self, room: Room) -> None:
        # Longest-standing member wins; user id breaks ties.
        new_host = min(room.users.values(), key=lambda u: (u.joined_at, u.id))
        new_host.is_host = True
        logger.info(f"New host for room {room.id}: {new_host.id}")

    def _schedule_deletion(self, room: Room) -> None:
        self._cancel_deletion(room)
        loop = asyncio.get_running_loop()
        room._deletion_timer = loop.call_later(self.grace_seconds, self._delete_if_empty, room.id)

    def _cancel_deletion(self, room: Room) -> None:
        if room._deletion_timer is not None:
            room._deletion_timer.cancel()
            room._deletion_timer = None

    def _delete_if_empty(self, room_id: str) -> None:
        room = self.rooms.get(room_id)
        if room is None:
            return
        room._deletion_timer = None
        if not room.users:
            self._delete_room(room_id)
            logger.info(f"Deleted empty room: {room_id}")

    def _delete_room(self, room_id: str) -> None:
        room = self.rooms.pop(room_id, None)
        if room is not None:
            self._cancel_deletion(room)
