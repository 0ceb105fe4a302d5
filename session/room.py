from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from constants import GAME_ID, ROOM_CODE_MAX_ATTEMPTS
from errors import (
    GameConnectionError,
    HostDisconnected,
    IdCollision,
    RequestRejected,
    RoomFull,
    RoomNotFound,
)
from logging_config import get_logger
from room_codes import generate_room_code
from schemas.rooms import JoinStatus, Role, RoomRecord
from session.channel import MessageChannel
from session.events import SessionEvents
from session.presence import PresenceMonitor
from session.scope import SubscriptionScope
from store import StoreAdapter, Subscription
from store_keys import (
    ROOM_COLLECTION_PATH,
    ROOM_GUEST_PATH,
    ROOM_HOST_PATH,
    ROOM_JOIN_REQUEST_PATH,
    ROOM_PATH,
)

logger = get_logger(__name__)


@dataclass
class Session:
    """Local, never persisted view of the room this participant is in."""

    role: Role
    game_id: str
    room_code: str
    scope: SubscriptionScope
    joined: bool = False
    request_pending: bool = False
    watchers: List[Subscription] = field(default_factory=list)

    def path(self, template: str) -> str:
        return template.format(game_id=self.game_id, code=self.room_code)

    @property
    def room_path(self) -> str:
        return self.path(ROOM_PATH)


def open_room_codes(rooms: Optional[Dict[str, Any]]) -> List[str]:
    """Codes of the rooms a guest could still join."""
    if not isinstance(rooms, dict):
        return []
    return sorted(
        code for code, raw in rooms.items() if isinstance(raw, dict) and RoomRecord.model_validate(raw).is_open
    )


class RoomSession:
    """Lifecycle of a room: creating it as host, entering it as guest, tearing it down."""

    def __init__(
        self,
        store: StoreAdapter,
        events: SessionEvents,
        game_id: str = GAME_ID,
        max_attempts: int = ROOM_CODE_MAX_ATTEMPTS,
        code_factory: Callable[[], str] = generate_room_code,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.events = events
        self.game_id = game_id
        self._max_attempts = max_attempts
        self._code_factory = code_factory
        self._scope = SubscriptionScope(store, name="connection")
        self.session: Optional[Session] = None
        self.channel: Optional[MessageChannel] = None
        self.presence: Optional[PresenceMonitor] = None
        self._guest_arrived = False
        self._request_pending = False

    def open_session(self, role: Role, code: str = "") -> Session:
        if self.session is not None:
            raise RuntimeError(f"Already in room {self.session.room_code} as {self.session.role.value}")
        self.session = Session(role=role, game_id=self.game_id, room_code=code, scope=self._scope.child("session"))
        self._guest_arrived = False
        self._request_pending = False
        return self.session

    async def discard(self, session: Session) -> None:
        """Drop a session that never got into the room; the room record is left alone."""
        await session.scope.aclose()
        if self.session is session:
            self.session = None

    # ---------- host ----------

    async def create(self) -> str:
        session = self.open_session(Role.HOST)
        try:
            code = await self._claim_code()
        except BaseException:
            await self.discard(session)
            raise

        session.room_code = code
        try:
            session.scope.ensure_open()
            await session.scope.on_disconnect_set(session.path(ROOM_HOST_PATH), False)
            session.watchers.append(
                await session.scope.subscribe_value(session.path(ROOM_GUEST_PATH), self._on_guest_flag)
            )
            session.watchers.append(
                await session.scope.subscribe_value(session.path(ROOM_JOIN_REQUEST_PATH), self._on_join_request)
            )
        except BaseException:
            # The code is claimed already, so give it back
            await self.discard(session)
            try:
                await self.store.remove(session.room_path)
            except Exception as e:
                logger.warning(f"Could not release room {code}: {e}")
            raise
        session.joined = True
        logger.info(f"Room {code} created for game {self.game_id}")
        return code

    async def _claim_code(self) -> str:
        for attempt in range(1, self._max_attempts + 1):
            code = self._code_factory()
            try:
                await self.store.transaction(ROOM_PATH.format(game_id=self.game_id, code=code), self._claim)
            except IdCollision:
                logger.warning(f"Room code {code} is taken (attempt {attempt}/{self._max_attempts})")
                continue
            return code
        raise IdCollision(f"No free room code after {self._max_attempts} attempts")

    @staticmethod
    def _claim(current: Any) -> dict:
        # A record whose host is gone is left over from an earlier game and may be reused
        if current is not None and RoomRecord.model_validate(current).host:
            raise IdCollision()
        return RoomRecord(host=True, guest=False).to_store()

    def _on_guest_flag(self, value: Any) -> None:
        session = self.session
        if value is not True or self._guest_arrived or session is None or session.scope.closed:
            return
        self._guest_arrived = True
        session.scope.spawn(
            self._host_connected(session),
            name=f"host-connected-{session.room_code}",
            on_error=self._report,
        )

    def _on_join_request(self, value: Any) -> None:
        status = value.get("status") if isinstance(value, dict) else None
        pending = status == JoinStatus.PENDING.value
        if pending and not self._request_pending:
            logger.info(f"Join request pending for room {self.session.room_code if self.session else '?'}")
            self.events.join_request()
        self._request_pending = pending

    async def _host_connected(self, session: Session) -> None:
        watchers, session.watchers = session.watchers, []
        for subscription in watchers:
            await session.scope.unsubscribe(subscription)
        logger.info(f"Guest joined room {session.room_code}")
        await self.start_play(session, counterpart=Role.GUEST)

    # ---------- guest ----------

    async def join(self, code: str) -> None:
        session = self.open_session(Role.GUEST, code)
        try:
            await self.store.transaction(session.room_path, self._enter)
        except BaseException:
            await self.discard(session)
            raise
        await self.complete_guest_join(session, write_flag=False)

    @staticmethod
    def _enter(current: Any) -> dict:
        if current is None:
            raise RoomNotFound()
        record = RoomRecord.model_validate(current)
        if not record.host:
            raise RoomNotFound()
        if record.guest:
            raise RoomFull()
        return {**current, "guest": True}

    @staticmethod
    def _take_seat(current: Any) -> dict:
        # The host may have left or answered differently since accepting
        if current is None:
            raise HostDisconnected()
        record = RoomRecord.model_validate(current)
        if not record.host:
            raise HostDisconnected()
        if record.guest:
            raise RoomFull()
        if record.join_request is not None and record.join_request.status == JoinStatus.REJECTED:
            raise RequestRejected()
        return {**current, "guest": True}

    async def complete_guest_join(self, session: Session, write_flag: bool = True) -> None:
        """Finish entering the room as guest: own presence flag, hook, listeners."""
        try:
            if write_flag:
                await self.store.transaction(session.room_path, self._take_seat)
            session.joined = True
            await session.scope.on_disconnect_set(session.path(ROOM_GUEST_PATH), False)
        except BaseException:
            await self._release(session)
            raise
        logger.info(f"Joined room {session.room_code} as guest")
        await self.start_play(session, counterpart=Role.HOST)

    # ---------- both ----------

    async def start_play(self, session: Session, counterpart: Role) -> None:
        self.channel = MessageChannel(self.store, session, self.events)
        await self.channel.listen()
        on_gone = (lambda: self._guest_left(session)) if counterpart == Role.GUEST else None
        self.presence = PresenceMonitor(session.scope, self.events, on_gone=on_gone)
        await self.presence.watch(session.path(ROOM_HOST_PATH if counterpart == Role.HOST else ROOM_GUEST_PATH))
        self.events.connected()

    def _guest_left(self, session: Session) -> None:
        # A room hosts one game: once its guest is gone nobody else may take the seat
        if self.channel is not None:
            self.channel.stop()
        if session.scope.closed:
            return
        session.scope.spawn(
            self._close_room(session),
            name=f"close-room-{session.room_code}",
            on_error=self._report,
        )

    async def _close_room(self, session: Session) -> None:
        await session.scope.cancel_on_disconnect(session.path(ROOM_HOST_PATH))
        await self.store.remove(session.room_path)
        logger.info(f"Room {session.room_code} closed after its guest left")

    async def list_active_rooms(
        self, callback: Callable[[List[str]], None], game_id: Optional[str] = None
    ) -> Callable[[], Awaitable[None]]:
        path = ROOM_COLLECTION_PATH.format(game_id=game_id or self.game_id)
        subscription = await self._scope.subscribe_value(path, lambda rooms: callback(open_room_codes(rooms)))

        async def unsubscribe() -> None:
            await self._scope.unsubscribe(subscription)

        return unsubscribe

    async def teardown(self) -> None:
        """Leave the current room: the host deletes it, a guest only clears its own traces."""
        session, self.session = self.session, None
        if session is not None:
            await self._release(session)

    async def _release(self, session: Session) -> None:
        if self.session is session:
            self.session = None
        self.channel = None
        self.presence = None
        await session.scope.aclose()
        try:
            if session.role == Role.HOST:
                if session.joined:
                    await self.store.remove(session.room_path)
                    logger.info(f"Room {session.room_code} deleted by host")
            elif session.joined or session.request_pending:
                await self.store.transaction(session.room_path, lambda current: self._leave(session, current))
                logger.info(f"Left room {session.room_code}")
        except Exception as e:
            logger.warning(f"Could not clean up room {session.room_code}: {e}")

    @staticmethod
    def _leave(session: Session, current: Any) -> Any:
        if current is None:
            return None
        updated = dict(current)
        if session.joined:
            updated["guest"] = False
        request = updated.get("joinRequest")
        if session.request_pending and isinstance(request, dict) and request.get("status") == JoinStatus.PENDING.value:
            updated.pop("joinRequest")
        return updated

    async def close(self) -> None:
        await self.teardown()
        await self._scope.aclose()

    def _report(self, exc: BaseException) -> None:
        if isinstance(exc, GameConnectionError):
            self.events.error(exc)
