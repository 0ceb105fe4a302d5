import asyncio
from typing import Any, Callable, Coroutine, List, Optional, Set

from errors import RequestCancelled
from logging_config import get_logger
from store import AppendCallback, StoreAdapter, Subscription, ValueCallback
from utils import cancel_and_wait

logger = get_logger(__name__)


class SubscriptionScope:
    """Owns the store subscriptions, on-disconnect hooks, tasks and waits of one session.

    Everything registered through a scope is released by a single ``aclose()``:
    subscriptions are detached, pending on-disconnect hooks cancelled, tasks
    cancelled and open waits failed with ``RequestCancelled``. Child scopes
    close with their parent. Used as ``async with scope.child("handshake")``
    the release also happens on every exit path of the block.

    Registering anything on a closed scope raises ``RequestCancelled``.
    """

    def __init__(self, store: Optional[StoreAdapter] = None, name: str = "session"):
        self._store = store
        self.name = name
        self.closed = False
        self._subscriptions: List[Subscription] = []
        self._hooks: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._futures: Set[asyncio.Future] = set()
        self._children: List["SubscriptionScope"] = []

    async def __aenter__(self) -> "SubscriptionScope":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def ensure_open(self) -> None:
        if self.closed:
            raise RequestCancelled(f"The {self.name} scope was released")

    def child(self, name: str) -> "SubscriptionScope":
        self.ensure_open()
        scope = SubscriptionScope(self._store, name=f"{self.name}/{name}")
        self._children.append(scope)
        return scope

    async def subscribe_value(self, path: str, on_change: ValueCallback) -> Subscription:
        self.ensure_open()
        subscription = await self._store.subscribe_value(path, on_change)
        self._subscriptions.append(subscription)
        return subscription

    async def subscribe_appended(self, path: str, on_append: AppendCallback) -> Subscription:
        self.ensure_open()
        subscription = await self._store.subscribe_appended(path, on_append)
        self._subscriptions.append(subscription)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        await self._store.unsubscribe(subscription)

    async def on_disconnect_set(self, path: str, value: Any) -> None:
        self.ensure_open()
        await self._store.on_disconnect_set(path, value)
        self._hooks.add(path)

    async def on_disconnect_remove(self, path: str) -> None:
        self.ensure_open()
        await self._store.on_disconnect_remove(path)
        self._hooks.add(path)

    async def cancel_on_disconnect(self, path: str) -> None:
        self._hooks.discard(path)
        await self._store.cancel_on_disconnect(path)

    def future(self) -> asyncio.Future:
        """A wait owned by the scope; closing the scope fails it with ``RequestCancelled``."""
        self.ensure_open()
        future = asyncio.get_running_loop().create_future()
        self._futures.add(future)
        future.add_done_callback(self._futures.discard)
        return future

    def spawn(
        self,
        coro: Coroutine,
        name: Optional[str] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> asyncio.Task:
        """Run ``coro`` in the background; failures are logged and handed to ``on_error``."""
        if self.closed:
            coro.close()
            raise RequestCancelled(f"The {self.name} scope was released")
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is None:
                return
            logger.error(f"Background task {finished.get_name()} in {self.name} failed: {exc}", exc_info=exc)
            if on_error is not None and not self.closed:
                on_error(exc)

        task.add_done_callback(_done)
        return task

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True

        for child in self._children:
            await child.aclose()
        self._children.clear()

        for future in list(self._futures):
            if not future.done():
                future.set_exception(RequestCancelled(f"The {self.name} scope was released"))
        self._futures.clear()

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                await cancel_and_wait(task)
        self._tasks.clear()

        subscriptions, self._subscriptions = self._subscriptions, []
        hooks, self._hooks = self._hooks, set()
        # Mark everything inactive first so nothing already queued can fire
        for subscription in subscriptions:
            subscription.active = False
        try:
            for subscription in subscriptions:
                await self._store.unsubscribe(subscription)
            for path in hooks:
                await self._store.cancel_on_disconnect(path)
        except Exception as e:
            # The store connection may already be gone; nothing left to release then
            logger.warning(f"Could not fully release {self.name}: {e}")
        logger.debug(f"Released {self.name}: {len(subscriptions)} subscriptions, {len(hooks)} hooks")
