import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic.alias_generators import to_camel

from cobrowse.config import DEFAULT_MAX_USERS, DEFAULT_ROOM_URL


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def envelope(event: str, data: Optional[dict] = None) -> dict:
    """Frame an event the way every channel carries it."""
    return {"event": event, "data": data or {}}


class WireModel(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# -----------------------------
# Session store state
# -----------------------------
class User(WireModel):
    id: str
    name: str
    is_host: bool = False
    joined_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)


class Room(WireModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    password: Optional[str] = Field(default=None, exclude=True)
    users: Dict[str, User] = Field(default_factory=dict)
    current_url: str = DEFAULT_ROOM_URL
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)
    max_users: int = DEFAULT_MAX_USERS

    _deletion_timer: Optional[asyncio.TimerHandle] = PrivateAttr(default=None)

    @property
    def is_full(self) -> bool:
        return len(self.users) >= self.max_users

    @property
    def host(self) -> Optional[User]:
        return next((u for u in self.users.values() if u.is_host), None)

    def member_list(self) -> List[dict]:
        return [u.to_wire() for u in self.users.values()]

    def summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "currentUrl": self.current_url,
            "userCount": len(self.users),
            "maxUsers": self.max_users,
            "hasPassword": bool(self.password),
        }

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "currentUrl": self.current_url,
            "users": self.member_list(),
            "maxUsers": self.max_users,
        }


# -----------------------------
# Inbound commands (client -> relay)
# -----------------------------
class Command(WireModel):
    model_config = ConfigDict(extra="ignore")


class CreateRoomCommand(Command):
    name: str = Field(min_length=1)
    password: Optional[str] = None
    max_users: Optional[int] = None


class JoinRoomCommand(Command):
    room_id: str
    user_name: str = Field(min_length=1)
    password: Optional[str] = None


class UrlChangeCommand(Command):
    url: str = Field(min_length=1)


class SignalCommand(Command):
    """WebRTC offer/answer/ICE between room clients. Payload is opaque."""

    model_config = ConfigDict(extra="allow")

    to: str


class ControlCommand(Command):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    data: Any = None


# -----------------------------
# Browser-viewer sub-channel commands
# -----------------------------
class OfferCommand(Command):
    offer: Dict[str, Any]


class IceCandidateCommand(Command):
    candidate: Any = None


class NavigateCommand(Command):
    url: str = Field(min_length=1)


# -----------------------------
# Engine HTTP payloads
# -----------------------------
class NavigateRequest(BaseModel):
    url: Optional[str] = None


class ExecuteRequest(BaseModel):
    script: Optional[str] = None


class PageInfo(BaseModel):
    url: str
    title: str
