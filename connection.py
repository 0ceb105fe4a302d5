from typing import Any, Awaitable, Callable, List, Optional

from errors import GameConnectionError, RoomNotFound
from logging_config import get_logger
from room_codes import is_valid_room_code, normalize_room_code
from schemas.rooms import Role
from session.backends import DirectTransportBackend, SessionBackend, StoreRelayBackend
from session.events import SessionEvents
from store import StoreAdapter
from transport.base import TransportEndpoint
from transport.websocket import WebSocketEndpoint

logger = get_logger(__name__)


class GameConnection:
    """Two-player connection around a shareable room code.

    Register handlers with ``on()`` before starting an operation::

        connection = GameConnection.over_store(store)
        connection.on("data", handle_move)
        code = await connection.create_game()

    Events are ``connected``, ``data`` (payload), ``disconnected``, ``error``
    (GameConnectionError) and ``join_request``. Failed operations raise and
    also emit ``error``. After ``destroy()`` no handler runs again.
    """

    def __init__(self, backend: SessionBackend):
        self.events = SessionEvents()
        self.backend = backend
        self.backend.bind(self.events)
        self.destroyed = False

    @classmethod
    def over_store(cls, store: StoreAdapter, **kwargs) -> "GameConnection":
        return cls(StoreRelayBackend(store, **kwargs))

    @classmethod
    def over_transport(
        cls, endpoint_factory: Callable[[], TransportEndpoint] = WebSocketEndpoint, **kwargs
    ) -> "GameConnection":
        return cls(DirectTransportBackend(endpoint_factory, **kwargs))

    async def __aenter__(self) -> "GameConnection":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.destroy()

    def on(self, event: str, handler: Optional[Callable] = None):
        return self.events.on(event, handler)

    @property
    def role(self) -> Optional[Role]:
        return self.backend.role

    @property
    def room_code(self) -> Optional[str]:
        return self.backend.room_code

    async def create_game(self) -> str:
        self._ensure_alive()
        return await self._settle(self.backend.create_game())

    async def join_game(self, code: str) -> None:
        self._ensure_alive()
        await self._settle(self._enter(code, self.backend.join_game))

    async def request_to_join(self, code: str) -> None:
        self._ensure_alive()
        await self._settle(self._enter(code, self.backend.request_to_join))

    async def accept_join_request(self) -> None:
        self._ensure_alive()
        await self._settle(self.backend.accept())

    async def reject_join_request(self) -> None:
        self._ensure_alive()
        await self._settle(self.backend.reject())

    async def send(self, payload: Any) -> None:
        self._ensure_alive()
        await self.backend.send(payload)

    async def list_active_rooms(
        self, callback: Callable[[List[str]], None], game_id: Optional[str] = None
    ) -> Callable[[], Awaitable[None]]:
        """Call ``callback`` with the codes of joinable rooms now and on every change."""
        self._ensure_alive()
        return await self._settle(self.backend.list_active_rooms(callback, game_id))

    async def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        # Handlers go first so nothing in flight can reach them during teardown
        self.events.close()
        await self.backend.destroy()
        logger.info("Connection destroyed")

    @staticmethod
    async def _enter(code: str, operation: Callable[[str], Awaitable[None]]) -> None:
        normalized = normalize_room_code(code)
        if not is_valid_room_code(normalized):
            raise RoomNotFound(f"Room code {code!r} is not valid")
        await operation(normalized)

    async def _settle(self, operation: Awaitable):
        try:
            return await operation
        except GameConnectionError as exc:
            if not self.destroyed:
                logger.info(f"Operation failed: {exc.kind.value}")
                self.events.error(exc)
            raise

    def _ensure_alive(self) -> None:
        if self.destroyed:
            raise RuntimeError("Connection was destroyed")
