"""Error taxonomy shared by the relay and the automation engine."""
from enum import Enum


class CobrowseError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CobrowseError):
    """Bad input from a caller. Never mutates state."""

    status_code = 400


class JoinErrorCode(Enum):
    NOT_FOUND = "Room not found"
    INVALID_PASSWORD = "Invalid password"
    FULL = "Room is full"
    ALREADY_JOINED = "User already in room"


class JoinRoomError(ValidationError):
    def __init__(self, code: JoinErrorCode):
        super().__init__(code.value)
        self.code = code


class UnavailableError(CobrowseError):
    """The engine link is down or the browser session cannot serve the call."""

    status_code = 503


class DriverError(CobrowseError):
    pass


class NavigationError(DriverError):
    pass


class NavigationTimeout(CobrowseError):
    status_code = 504


class NegotiationError(CobrowseError):
    status_code = 400
