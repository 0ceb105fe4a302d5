from enum import Enum
from typing import Any, Callable, Optional, Set

from pyee.asyncio import AsyncIOEventEmitter

from errors import GameConnectionError
from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionEvent(str, Enum):
    CONNECTED = "connected"
    DATA = "data"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    JOIN_REQUEST = "join_request"


class SessionEvents:
    """Handler registry for one connection.

    ``connected`` and ``disconnected`` fire at most once for the lifetime of
    the connection; ``data`` fires once per received message and
    ``join_request`` once per request that becomes pending. After ``close()``
    no handler is ever called again. Coroutine handlers are scheduled on the
    running loop.
    """

    def __init__(self) -> None:
        self._emitter = AsyncIOEventEmitter()
        self._fired: Set[ConnectionEvent] = set()
        self.closed = False

    def on(self, event: str, handler: Optional[Callable] = None):
        """Register ``handler`` for ``event``; without a handler, returns a decorator."""
        event = ConnectionEvent(event)
        if handler is None:
            return self._emitter.on(event.value)
        return self._emitter.on(event.value, handler)

    def remove_listener(self, event: str, handler: Callable) -> None:
        self._emitter.remove_listener(ConnectionEvent(event).value, handler)

    def connected(self) -> None:
        self._emit_once(ConnectionEvent.CONNECTED)

    def disconnected(self) -> None:
        self._emit_once(ConnectionEvent.DISCONNECTED)

    def data(self, payload: Any) -> None:
        self._emit(ConnectionEvent.DATA, payload)

    def join_request(self) -> None:
        self._emit(ConnectionEvent.JOIN_REQUEST)

    def error(self, exc: GameConnectionError) -> None:
        # pyee raises "error" events nobody listens to
        if not self._emitter.listeners(ConnectionEvent.ERROR.value):
            logger.debug(f"Unhandled connection error: {exc!r}")
            return
        self._emit(ConnectionEvent.ERROR, exc)

    def close(self) -> None:
        self.closed = True
        self._emitter.remove_all_listeners()

    def _emit_once(self, event: ConnectionEvent) -> None:
        if event in self._fired:
            return
        self._fired.add(event)
        self._emit(event)

    def _emit(self, event: ConnectionEvent, *args: Any) -> None:
        if self.closed:
            return
        logger.debug(f"Emitting {event.value}")
        self._emitter.emit(event.value, *args)
