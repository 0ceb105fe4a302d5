import abc
import itertools
from typing import Any, Callable, Optional

ValueCallback = Callable[[Any], None]
AppendCallback = Callable[[str, Any], None]

_subscription_ids = itertools.count(1)


class Subscription:
    """Handle returned by a subscribe call; pass it to ``unsubscribe``."""

    def __init__(self, path: str, callback: Callable, *, appended: bool = False):
        self.id = next(_subscription_ids)
        self.path = path
        self.callback = callback
        self.appended = appended
        self.active = True
        # Last value delivered to a value subscription, or the last seen entry
        # key for an appended subscription
        self.last: Any = None
        self.delivered = False

    def __repr__(self) -> str:
        kind = "appended" if self.appended else "value"
        return f"Subscription(id={self.id}, path={self.path!r}, kind={kind}, active={self.active})"


def split_path(path: str) -> list[str]:
    return [segment for segment in path.strip("/").split("/") if segment]


def paths_overlap(a: str, b: str) -> bool:
    """True when one path is equal to, an ancestor of, or a descendant of the other."""
    left, right = split_path(a), split_path(b)
    size = min(len(left), len(right))
    return left[:size] == right[:size]


class StoreAdapter(abc.ABC):
    """
    Abstract shared tree of JSON values with change notification and
    server-applied on-disconnect operations.

    Paths are ``/``-separated (``rooms/{game_id}/{code}/guest``). A value
    written at a path replaces the whole subtree below it; writing ``None``
    removes it. Every client sees writes from every other client through its
    subscriptions.

    Subscription callbacks are plain functions. They run on the event loop
    after the write that triggered them was acknowledged, never inside the
    caller's ``write``; they must not block and must not raise.

    On-disconnect operations registered by a client are applied by the store
    when that client's connection drops, independently of whatever the client
    is still executing. ``close()`` counts as a dropped connection.
    """

    async def start(self) -> None:
        """
        Open connections held by this store.

        Default implementation is a no-op.
        """

    async def close(self) -> None:
        """
        Close the connection, applying this client's on-disconnect operations.

        Default implementation is a no-op.
        """

    async def __aenter__(self) -> "StoreAdapter":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @abc.abstractmethod
    async def read_once(self, path: str) -> Any:
        """
        Read the current value at ``path``.

        Returns:
            The value (a dict for inner nodes), or None when nothing is stored.
        """
        ...

    @abc.abstractmethod
    async def write(self, path: str, value: Any) -> None:
        """
        Replace the value at ``path``. ``None`` removes it.
        """
        ...

    async def remove(self, path: str) -> None:
        await self.write(path, None)

    @abc.abstractmethod
    async def append(self, path: str, value: Any) -> str:
        """
        Append ``value`` to the ordered log at ``path``.

        Returns:
            The generated key. Keys sort in insertion order.
        """
        ...

    @abc.abstractmethod
    async def transaction(self, path: str, update: Callable[[Any], Any]) -> Any:
        """
        Conditionally replace the value at ``path``.

        ``update`` receives the current value and returns the new one. It may
        be called more than once when another writer races it. Raising from
        ``update`` aborts the transaction without writing and the exception
        propagates to the caller.

        Returns:
            The committed value.
        """
        ...

    @abc.abstractmethod
    async def subscribe_value(self, path: str, on_change: ValueCallback) -> Subscription:
        """
        Watch the value at ``path``.

        ``on_change`` is called once with the current value (None when
        absent) and then every time the value changes.
        """
        ...

    @abc.abstractmethod
    async def subscribe_appended(self, path: str, on_append: AppendCallback) -> Subscription:
        """
        Watch the log at ``path`` for entries appended after this call.

        ``on_append`` is called with ``(key, value)`` in append order.
        """
        ...

    @abc.abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        """
        Stop delivering to ``subscription``. Unknown or already cancelled
        subscriptions are ignored.
        """
        ...

    @abc.abstractmethod
    async def on_disconnect_set(self, path: str, value: Any) -> None:
        """Write ``value`` at ``path`` when this client's connection drops."""
        ...

    @abc.abstractmethod
    async def on_disconnect_remove(self, path: str) -> None:
        """Remove ``path`` when this client's connection drops."""
        ...

    @abc.abstractmethod
    async def cancel_on_disconnect(self, path: str) -> None:
        """Drop the pending on-disconnect operation for ``path``, if any."""
        ...


def get_child(value: Any, segments: list[str]) -> Optional[Any]:
    node = value
    for segment in segments:
        if not isinstance(node, dict) or segment not in node:
            return None
        node = node[segment]
    return node


def set_child(value: Any, segments: list[str], child: Any) -> Any:
    """Return ``value`` with ``child`` stored at ``segments``; empty dicts are pruned."""
    if not segments:
        return child
    node = dict(value) if isinstance(value, dict) else {}
    head, rest = segments[0], segments[1:]
    updated = set_child(node.get(head), rest, child)
    if updated is None or updated == {}:
        node.pop(head, None)
    else:
        node[head] = updated
    return node or None
