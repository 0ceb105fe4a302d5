from typing import Any, Callable, Optional

from logging_config import get_logger
from session.events import SessionEvents
from session.scope import SubscriptionScope
from store import Subscription

logger = get_logger(__name__)


class PresenceMonitor:
    """Raises ``disconnected`` once when the counterpart's liveness flag drops.

    Start it only after the handshake finished: before that the flag may still
    hold its initial ``false``.
    """

    def __init__(
        self,
        scope: SubscriptionScope,
        events: SessionEvents,
        on_gone: Optional[Callable[[], None]] = None,
    ):
        self._scope = scope
        self._events = events
        self._on_gone = on_gone
        self._subscription: Optional[Subscription] = None
        self.gone = False

    async def watch(self, path: str) -> None:
        self._subscription = await self._scope.subscribe_value(path, self._on_flag)

    def _on_flag(self, value: Any) -> None:
        # Anything but an explicit true (false, removed record) means the counterpart left
        if value is True or self.gone:
            return
        self.gone = True
        logger.info(f"Counterpart left ({self._subscription.path if self._subscription else 'unknown'} = {value!r})")
        if self._on_gone is not None:
            self._on_gone()
        self._events.disconnected()
