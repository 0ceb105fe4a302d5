"""
Backends behind GameConnection.

Both settle create/join exactly once and fire each event at most once per
transition. The store relay keeps the room in the shared store and supports
gated entry; the direct transport connects the two endpoints and the room
only exists as the host's endpoint id. In both, a room hosts one game and
closes once its guest has left.
"""

import abc
import asyncio
from typing import Any, Awaitable, Callable, List, Optional

from constants import (
    GAME_ID,
    PEER_GUEST_PREFIX,
    PEER_ID_PREFIX,
    ROOM_CODE_MAX_ATTEMPTS,
    TRANSPORT_OPEN_TIMEOUT,
)
from errors import (
    GameConnectionError,
    IdCollision,
    RequestCancelled,
    RoomNotFound,
    TransportError,
    TransportTimeout,
    UnsupportedOperation,
)
from logging_config import get_logger
from room_codes import generate_room_code
from schemas.rooms import Role
from session.events import SessionEvents
from session.negotiator import JoinNegotiator
from session.room import RoomSession
from session.scope import SubscriptionScope
from store import StoreAdapter
from transport.base import PeerUnavailable, TransportChannel, TransportEndpoint

logger = get_logger(__name__)

RoomsCallback = Callable[[List[str]], None]
Unsubscribe = Callable[[], Awaitable[None]]


class SessionBackend(abc.ABC):
    events: SessionEvents

    def bind(self, events: SessionEvents) -> None:
        """Attach the event registry of the owning connection. Called once, before any operation."""
        self.events = events

    @property
    @abc.abstractmethod
    def role(self) -> Optional[Role]: ...

    @property
    @abc.abstractmethod
    def room_code(self) -> Optional[str]: ...

    @abc.abstractmethod
    async def create_game(self) -> str: ...

    @abc.abstractmethod
    async def join_game(self, code: str) -> None: ...

    @abc.abstractmethod
    async def request_to_join(self, code: str) -> None: ...

    @abc.abstractmethod
    async def accept(self) -> None: ...

    @abc.abstractmethod
    async def reject(self) -> None: ...

    @abc.abstractmethod
    async def send(self, payload: Any) -> None: ...

    @abc.abstractmethod
    async def list_active_rooms(self, callback: RoomsCallback, game_id: Optional[str] = None) -> Unsubscribe: ...

    @abc.abstractmethod
    async def destroy(self) -> None: ...


class StoreRelayBackend(SessionBackend):
    """Rendezvous and messages through a shared store with on-disconnect hooks."""

    def __init__(
        self,
        store: StoreAdapter,
        game_id: str = GAME_ID,
        max_attempts: int = ROOM_CODE_MAX_ATTEMPTS,
        code_factory: Callable[[], str] = generate_room_code,
    ):
        self.store = store
        self.game_id = game_id
        self._max_attempts = max_attempts
        self._code_factory = code_factory
        self.room: Optional[RoomSession] = None
        self.negotiator: Optional[JoinNegotiator] = None

    def bind(self, events: SessionEvents) -> None:
        super().bind(events)
        self.room = RoomSession(
            self.store,
            events,
            game_id=self.game_id,
            max_attempts=self._max_attempts,
            code_factory=self._code_factory,
        )
        self.negotiator = JoinNegotiator(self.room)

    @property
    def role(self) -> Optional[Role]:
        session = self.room.session
        return session.role if session else None

    @property
    def room_code(self) -> Optional[str]:
        session = self.room.session
        return session.room_code if session else None

    async def create_game(self) -> str:
        return await self.room.create()

    async def join_game(self, code: str) -> None:
        await self.room.join(code)

    async def request_to_join(self, code: str) -> None:
        await self.negotiator.request_to_join(code)

    async def accept(self) -> None:
        await self.negotiator.accept()

    async def reject(self) -> None:
        await self.negotiator.reject()

    async def send(self, payload: Any) -> None:
        if self.room.channel is None:
            logger.warning("send() called before the connection was established; message dropped")
            return
        await self.room.channel.send(payload)

    async def list_active_rooms(self, callback: RoomsCallback, game_id: Optional[str] = None) -> Unsubscribe:
        return await self.room.list_active_rooms(callback, game_id)

    async def destroy(self) -> None:
        await self.room.close()


class DirectTransportBackend(SessionBackend):
    """Host and guest talk over one direct channel; no shared record exists.

    The host registers its endpoint as ``otpg_<CODE>`` and accepts the first
    incoming channel. The guest registers under a random guest id and
    connects to the host's id. Channel opening is bounded by ``open_timeout``.
    """

    def __init__(
        self,
        endpoint_factory: Callable[[], TransportEndpoint],
        open_timeout: float = TRANSPORT_OPEN_TIMEOUT,
        max_attempts: int = ROOM_CODE_MAX_ATTEMPTS,
        code_factory: Callable[[], str] = generate_room_code,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._endpoint_factory = endpoint_factory
        self._open_timeout = open_timeout
        self._max_attempts = max_attempts
        self._code_factory = code_factory
        self._role: Optional[Role] = None
        self._code: Optional[str] = None
        self._endpoint: Optional[TransportEndpoint] = None
        self._channel: Optional[TransportChannel] = None
        self._scope: Optional[SubscriptionScope] = None
        self._connected = False

    @property
    def role(self) -> Optional[Role]:
        return self._role

    @property
    def room_code(self) -> Optional[str]:
        return self._code

    def _begin(self, role: Role) -> SubscriptionScope:
        if self._endpoint is not None or self._scope is not None:
            raise RuntimeError(f"Already in room {self._code} as {self._role.value}")
        self._role = role
        self._scope = SubscriptionScope(name="transport")
        self._connected = False
        return self._scope

    def _ensure_current(self, scope: SubscriptionScope) -> None:
        # destroy() may have run while we were suspended
        if scope.closed or self._scope is not scope:
            raise RequestCancelled("The connection was destroyed")

    async def _open_endpoint(self, id_factory: Callable[[], str]) -> TransportEndpoint:
        for attempt in range(1, self._max_attempts + 1):
            endpoint = self._endpoint_factory()
            local_id = id_factory()
            try:
                await endpoint.open(local_id)
            except IdCollision:
                logger.warning(f"Endpoint id {local_id} is taken (attempt {attempt}/{self._max_attempts})")
                await endpoint.close()
                continue
            except BaseException:
                await endpoint.close()
                raise
            return endpoint
        raise IdCollision(f"No free endpoint id after {self._max_attempts} attempts")

    # ---------- host ----------

    async def create_game(self) -> str:
        scope = self._begin(Role.HOST)
        codes = []

        def host_id() -> str:
            codes.append(self._code_factory())
            return PEER_ID_PREFIX + codes[-1]

        try:
            endpoint = await self._open_endpoint(host_id)
            try:
                self._ensure_current(scope)
            except RequestCancelled:
                await endpoint.close()
                raise
            self._endpoint = endpoint
        except BaseException:
            await self._release()
            raise
        self._code = codes[-1]
        self._endpoint.on("connection", self._on_incoming)
        logger.info(f"Room {self._code} open for a direct connection")
        return self._code

    def _on_incoming(self, channel: TransportChannel) -> None:
        if self._scope is None or self._scope.closed:
            return
        if self._channel is not None:
            logger.warning(f"Room {self._code} already has a guest; closing channel from {channel.remote_id}")
            self._scope.spawn(channel.close(), name=f"refuse-{channel.remote_id}")
            return
        self._channel = channel
        self._attach(channel)
        self._scope.spawn(
            self._host_connected(channel),
            name=f"host-connected-{self._code}",
            on_error=self._report,
        )

    async def _host_connected(self, channel: TransportChannel) -> None:
        try:
            await self._wait_for_open(channel)
        except GameConnectionError:
            # Free the room for the next guest
            if self._channel is channel:
                self._channel = None
            await channel.close()
            raise
        self._connected = True
        logger.info(f"Guest {channel.remote_id} connected to room {self._code}")
        self.events.connected()

    # ---------- guest ----------

    async def join_game(self, code: str) -> None:
        scope = self._begin(Role.GUEST)
        self._code = code
        try:
            endpoint = await self._open_endpoint(lambda: PEER_GUEST_PREFIX + self._code_factory())
            try:
                self._ensure_current(scope)
            except RequestCancelled:
                await endpoint.close()
                raise
            self._endpoint = endpoint
            channel = await endpoint.connect(PEER_ID_PREFIX + code)
            if scope.closed:
                await channel.close()
                self._ensure_current(scope)
            self._channel = channel
            self._attach(channel)
            await self._wait_for_open(channel)
            self._ensure_current(scope)
        except PeerUnavailable as e:
            await self._release()
            raise RoomNotFound(f"No host is waiting in room {code}") from e
        except BaseException:
            await self._release()
            raise
        self._connected = True
        logger.info(f"Joined room {code} over a direct channel")
        self.events.connected()

    async def request_to_join(self, code: str) -> None:
        raise UnsupportedOperation("Join requests need the store relay backend")

    async def accept(self) -> None:
        raise UnsupportedOperation("Join requests need the store relay backend")

    async def reject(self) -> None:
        raise UnsupportedOperation("Join requests need the store relay backend")

    async def list_active_rooms(self, callback: RoomsCallback, game_id: Optional[str] = None) -> Unsubscribe:
        raise UnsupportedOperation("Listing rooms needs the store relay backend")

    # ---------- both ----------

    def _attach(self, channel: TransportChannel) -> None:
        @channel.on("data")
        def on_data(payload: Any) -> None:
            if self._channel is channel:
                self.events.data(payload)

        @channel.on("close")
        def on_close() -> None:
            # A channel that never opened failed the handshake instead
            if self._channel is channel and self._connected:
                logger.info(f"Direct channel to {channel.remote_id} closed")
                if self._role == Role.HOST and self._scope is not None and not self._scope.closed:
                    self._scope.spawn(self._retire_endpoint(), name=f"close-room-{self._code}", on_error=self._report)
                self.events.disconnected()

    async def _retire_endpoint(self) -> None:
        # A room hosts one game: later guests find nobody under the room's id
        endpoint = self._endpoint
        if endpoint is None:
            return
        await endpoint.close()
        if self._endpoint is endpoint:
            self._endpoint = None
        logger.info(f"Room {self._code} closed after its guest left")

    async def _wait_for_open(self, channel: TransportChannel) -> None:
        if channel.is_open:
            return
        if self._scope is None:
            raise RequestCancelled("The connection was destroyed")
        opened = self._scope.future()

        def on_open() -> None:
            if not opened.done():
                opened.set_result(None)

        def on_error(exc: TransportError) -> None:
            if not opened.done():
                opened.set_exception(exc)

        def on_close() -> None:
            if not opened.done():
                opened.set_exception(TransportError(f"Channel to {channel.remote_id} closed before opening"))

        channel.on("open", on_open)
        channel.on("error", on_error)
        channel.on("close", on_close)
        try:
            await asyncio.wait_for(opened, self._open_timeout)
        except asyncio.TimeoutError:
            raise TransportTimeout(
                f"Channel to {channel.remote_id} did not open within {self._open_timeout}s"
            ) from None
        finally:
            channel.remove_listener("open", on_open)
            channel.remove_listener("error", on_error)
            channel.remove_listener("close", on_close)
        # Opened, but the other side may have hung up before we got to run again
        if not channel.is_open:
            raise TransportError(f"Channel to {channel.remote_id} closed right after opening")

    async def send(self, payload: Any) -> None:
        if self._channel is None or not self._channel.is_open:
            logger.warning("send() called before the connection was established; message dropped")
            return
        await self._channel.send(payload)

    async def destroy(self) -> None:
        await self._release()

    async def _release(self) -> None:
        scope, self._scope = self._scope, None
        channel, self._channel = self._channel, None
        endpoint, self._endpoint = self._endpoint, None
        if scope is not None:
            await scope.aclose()
        try:
            if channel is not None:
                await channel.close()
            if endpoint is not None:
                await endpoint.close()
        except TransportError as e:
            logger.warning(f"Could not close transport for room {self._code}: {e}")
        self._role = self._code = None
        self._connected = False

    def _report(self, exc: BaseException) -> None:
        if isinstance(exc, GameConnectionError):
            self.events.error(exc)
