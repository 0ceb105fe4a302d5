from enum import Enum
from typing import Any

from errors import (
    GameConnectionError,
    HostDisconnected,
    RequestCancelled,
    RequestConflict,
    RequestRejected,
    RoomFull,
    RoomNotFound,
)
from logging_config import get_logger
from schemas.rooms import JoinRequest, JoinStatus, Role, RoomRecord
from session.room import RoomSession, Session
from store_keys import ROOM_HOST_PATH, ROOM_JOIN_REQUEST_PATH, ROOM_JOIN_STATUS_PATH

logger = get_logger(__name__)


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    HOST_GONE = "host-gone"


class JoinNegotiator:
    """Gated entry: the guest files a join request and waits for the host's answer.

    The requester drives the whole state machine. It watches its request and
    the host's liveness flag together; the first terminal event decides the
    outcome and both watches are released before anything else happens, so a
    late notification can never settle the request a second time.
    """

    def __init__(self, room: RoomSession):
        self._room = room
        self._store = room.store

    async def request_to_join(self, code: str) -> None:
        session = self._room.open_session(Role.GUEST, code)
        try:
            await self._store.transaction(session.room_path, self._file_request)
        except BaseException:
            await self._room.discard(session)
            raise

        session.request_pending = True
        request_path = session.path(ROOM_JOIN_REQUEST_PATH)
        logger.info(f"Join request filed for room {code}")
        try:
            # Removed by the store if we vanish before the host answers
            await session.scope.on_disconnect_remove(request_path)
            outcome = await self._wait_for_outcome(session)
        except GameConnectionError:
            await self._room.discard(session)
            raise

        await session.scope.cancel_on_disconnect(request_path)
        session.request_pending = False

        if outcome == Outcome.ACCEPTED:
            logger.info(f"Join request for room {code} accepted")
            await self._room.complete_guest_join(session, write_flag=True)
            return

        await self._room.discard(session)
        if outcome == Outcome.CANCELLED:
            logger.info(f"Join request for room {code} was withdrawn")
            raise RequestCancelled(f"Join request for room {code} was removed")
        await self._store.remove(request_path)
        if outcome == Outcome.REJECTED:
            logger.info(f"Join request for room {code} rejected")
            raise RequestRejected(f"Host of room {code} rejected the request")
        logger.info(f"Host of room {code} left while the request was pending")
        raise HostDisconnected(f"Host of room {code} disconnected")

    @staticmethod
    def _file_request(current: Any) -> dict:
        if current is None:
            raise RoomNotFound()
        record = RoomRecord.model_validate(current)
        if not record.host:
            raise RoomNotFound()
        if record.guest:
            raise RoomFull()
        if record.has_pending_request:
            raise RequestConflict()
        return {**current, "joinRequest": JoinRequest(status=JoinStatus.PENDING).model_dump(mode="json")}

    async def _wait_for_outcome(self, session: Session) -> Outcome:
        async with session.scope.child("handshake") as handshake:
            decided = handshake.future()

            def settle(outcome: Outcome) -> None:
                if not decided.done():
                    decided.set_result(outcome)

            def on_request(value: Any) -> None:
                if value is None:
                    settle(Outcome.CANCELLED)
                    return
                status = value.get("status") if isinstance(value, dict) else None
                if status == JoinStatus.ACCEPTED.value:
                    settle(Outcome.ACCEPTED)
                elif status == JoinStatus.REJECTED.value:
                    settle(Outcome.REJECTED)

            def on_host(value: Any) -> None:
                if value is not True:
                    settle(Outcome.HOST_GONE)

            # Host first: when the whole room disappears the host's departure is the cause
            await handshake.subscribe_value(session.path(ROOM_HOST_PATH), on_host)
            await handshake.subscribe_value(session.path(ROOM_JOIN_REQUEST_PATH), on_request)
            return await decided

    async def accept(self) -> None:
        await self._answer(JoinStatus.ACCEPTED)

    async def reject(self) -> None:
        await self._answer(JoinStatus.REJECTED)

    async def _answer(self, status: JoinStatus) -> None:
        session = self._room.session
        if session is None or session.role != Role.HOST:
            raise RuntimeError("Only the host of a room can answer join requests")
        await self._store.write(session.path(ROOM_JOIN_STATUS_PATH), status.value)
        logger.info(f"Host answered join request for room {session.room_code}: {status.value}")
