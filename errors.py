from enum import Enum


class ErrorKind(str, Enum):
    ROOM_NOT_FOUND = "room-not-found"
    ROOM_FULL = "room-full"
    REQUEST_CONFLICT = "request-conflict"
    REQUEST_CANCELLED = "request-cancelled"
    HOST_DISCONNECTED = "host-disconnected"
    REQUEST_REJECTED = "request-rejected"
    ID_COLLISION = "id-collision"
    TRANSPORT_TIMEOUT = "transport-timeout"
    TRANSPORT_ERROR = "transport-error"
    UNSUPPORTED = "unsupported"


class GameConnectionError(Exception):
    """Base class for every failure a connection operation can settle with."""

    kind: ErrorKind

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind.value)


class RoomNotFound(GameConnectionError):
    kind = ErrorKind.ROOM_NOT_FOUND


class RoomFull(GameConnectionError):
    kind = ErrorKind.ROOM_FULL


class RequestConflict(GameConnectionError):
    kind = ErrorKind.REQUEST_CONFLICT


class RequestCancelled(GameConnectionError):
    kind = ErrorKind.REQUEST_CANCELLED


class HostDisconnected(GameConnectionError):
    kind = ErrorKind.HOST_DISCONNECTED


class RequestRejected(GameConnectionError):
    kind = ErrorKind.REQUEST_REJECTED


class IdCollision(GameConnectionError):
    kind = ErrorKind.ID_COLLISION


class TransportTimeout(GameConnectionError):
    kind = ErrorKind.TRANSPORT_TIMEOUT


class TransportError(GameConnectionError):
    kind = ErrorKind.TRANSPORT_ERROR


class UnsupportedOperation(GameConnectionError):
    """The operation needs a shared store; the direct transport has none."""

    kind = ErrorKind.UNSUPPORTED
