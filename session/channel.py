from typing import Any

from pydantic import ValidationError

from logging_config import get_logger
from schemas.rooms import Message
from session.events import SessionEvents
from store import StoreAdapter
from store_keys import ROOM_MESSAGES_PATH

logger = get_logger(__name__)


class MessageChannel:
    """Ordered message log of one room, seen from one participant."""

    def __init__(self, store: StoreAdapter, session, events: SessionEvents):
        self._store = store
        self._session = session
        self._events = events
        self._path = session.path(ROOM_MESSAGES_PATH)
        self.stopped = False

    def stop(self) -> None:
        """Deliver nothing more, including entries already queued."""
        self.stopped = True

    async def send(self, payload: Any) -> str:
        message = Message(sender=self._session.role, data=payload)
        key = await self._store.append(self._path, message.to_store())
        logger.debug(f"{self._session.role.value} sent message {key} in room {self._session.room_code}")
        return key

    async def listen(self) -> None:
        await self._session.scope.subscribe_appended(self._path, self._on_message)

    def _on_message(self, key: str, value: Any) -> None:
        if self.stopped:
            return
        try:
            message = Message.model_validate(value)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed message {key} in room {self._session.room_code}: {e}")
            return
        # Our own appends come back through the same log
        if message.sender == self._session.role:
            return
        logger.debug(f"{self._session.role.value} received message {key} in room {self._session.room_code}")
        self._events.data(message.data)
