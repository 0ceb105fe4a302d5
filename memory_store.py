import asyncio
import copy
import itertools
import uuid
from typing import Any, Callable, Dict, Optional, Set

from logging_config import get_logger
from store import (
    AppendCallback,
    StoreAdapter,
    Subscription,
    ValueCallback,
    get_child,
    paths_overlap,
    set_child,
    split_path,
)

logger = get_logger(__name__)


class InMemoryStore:
    """In-process shared tree. Single-node only.

    Stands in for the hosted store during development and tests: every
    participant gets its own :class:`InMemoryStoreClient` from :meth:`client`,
    and dropping a client's connection with ``disconnect()`` applies its
    on-disconnect operations the way the real store would.
    """

    def __init__(self) -> None:
        self._root: Any = None
        self._clients: Set["InMemoryStoreClient"] = set()
        self._append_counter = itertools.count(1)

    def client(self) -> "InMemoryStoreClient":
        client = InMemoryStoreClient(self)
        self._clients.add(client)
        logger.debug(f"In-memory store client {client.client_id} connected")
        return client

    def snapshot(self, path: str = "") -> Any:
        return copy.deepcopy(get_child(self._root, split_path(path)))

    def _write(self, path: str, value: Any) -> None:
        self._root = set_child(self._root, split_path(path), copy.deepcopy(value))
        self._notify(path)

    def _append(self, path: str, value: Any) -> str:
        key = f"{next(self._append_counter):016d}"
        self._root = set_child(self._root, split_path(path) + [key], copy.deepcopy(value))
        self._notify(path, appended=(key, value))
        return key

    def _notify(self, path: str, appended: Optional[tuple] = None) -> None:
        for client in list(self._clients):
            client._dispatch(path, appended)

    def _detach(self, client: "InMemoryStoreClient") -> None:
        self._clients.discard(client)


class InMemoryStoreClient(StoreAdapter):
    """One participant's connection to an :class:`InMemoryStore`."""

    def __init__(self, server: InMemoryStore) -> None:
        self._server = server
        self.client_id = uuid.uuid4().hex
        self.connected = True
        self._subscriptions: Dict[int, Subscription] = {}
        # path -> ("set", value) | ("remove", None)
        self._on_disconnect: Dict[str, tuple] = {}

    async def close(self) -> None:
        await self.disconnect()

    async def disconnect(self) -> None:
        """Drop the connection; the server applies the pending on-disconnect operations."""
        if not self.connected:
            return
        self.connected = False
        for subscription in self._subscriptions.values():
            subscription.active = False
        self._subscriptions.clear()
        self._server._detach(self)

        operations, self._on_disconnect = self._on_disconnect, {}
        logger.debug(f"Client {self.client_id} dropped, applying {len(operations)} on-disconnect operations")
        for path, (op, value) in operations.items():
            self._server._write(path, value if op == "set" else None)

    def _ensure_connected(self) -> None:
        if not self.connected:
            raise ConnectionError(f"Store client {self.client_id} is disconnected")

    async def read_once(self, path: str) -> Any:
        self._ensure_connected()
        return self._server.snapshot(path)

    async def write(self, path: str, value: Any) -> None:
        self._ensure_connected()
        self._server._write(path, value)

    async def append(self, path: str, value: Any) -> str:
        self._ensure_connected()
        return self._server._append(path, value)

    async def transaction(self, path: str, update: Callable[[Any], Any]) -> Any:
        self._ensure_connected()
        # Nothing else runs between the read and the write on a single loop
        current = self._server.snapshot(path)
        new_value = update(current)
        self._server._write(path, new_value)
        return copy.deepcopy(new_value)

    async def subscribe_value(self, path: str, on_change: ValueCallback) -> Subscription:
        self._ensure_connected()
        subscription = Subscription(path, on_change)
        self._subscriptions[subscription.id] = subscription
        self._queue_value(subscription, self._server.snapshot(path))
        return subscription

    async def subscribe_appended(self, path: str, on_append: AppendCallback) -> Subscription:
        self._ensure_connected()
        subscription = Subscription(path, on_append, appended=True)
        self._subscriptions[subscription.id] = subscription
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        self._subscriptions.pop(subscription.id, None)

    async def on_disconnect_set(self, path: str, value: Any) -> None:
        self._ensure_connected()
        self._on_disconnect[path] = ("set", copy.deepcopy(value))

    async def on_disconnect_remove(self, path: str) -> None:
        self._ensure_connected()
        self._on_disconnect[path] = ("remove", None)

    async def cancel_on_disconnect(self, path: str) -> None:
        self._ensure_connected()
        self._on_disconnect.pop(path, None)

    def pending_on_disconnect(self) -> Dict[str, tuple]:
        return dict(self._on_disconnect)

    def _dispatch(self, path: str, appended: Optional[tuple]) -> None:
        for subscription in list(self._subscriptions.values()):
            if subscription.appended:
                if appended is not None and split_path(subscription.path) == split_path(path):
                    key, value = appended
                    self._queue_append(subscription, key, copy.deepcopy(value))
            elif paths_overlap(subscription.path, path):
                value = self._server.snapshot(subscription.path)
                if subscription.delivered and value == subscription.last:
                    continue
                self._queue_value(subscription, value)

    def _queue_value(self, subscription: Subscription, value: Any) -> None:
        subscription.last = value
        subscription.delivered = True
        asyncio.get_running_loop().call_soon(self._deliver, subscription, (value,))

    def _queue_append(self, subscription: Subscription, key: str, value: Any) -> None:
        subscription.last = key
        asyncio.get_running_loop().call_soon(self._deliver, subscription, (key, value))

    @staticmethod
    def _deliver(subscription: Subscription, args: tuple) -> None:
        if not subscription.active:
            return
        try:
            subscription.callback(*args)
        except Exception as e:
            logger.error(f"Subscriber callback for {subscription.path} failed: {e}", exc_info=True)
