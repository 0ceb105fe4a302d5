import asyncio
import copy
import inspect
import json
import uuid
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from constants import PRESENCE_LEASE_SECONDS, REDIS_URL, STORE_KEY_PREFIX
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
from store_keys import (
    REDIS_CHANGES_CHANNEL,
    REDIS_LEASE_KEY,
    REDIS_ON_DISCONNECT_KEY,
    REDIS_REAPER_LOCK_KEY,
)
from utils import cancel_and_wait

logger = get_logger(__name__)


def _text(value: Any) -> Any:
    return value.decode() if isinstance(value, bytes) else value


class RedisBackend(StoreAdapter):
    """Redis implementation of the shared room store.

    Layout: the first ``record_depth`` path segments name a record, kept as a
    Redis hash whose field values are JSON (``rooms/{game_id}/{code}`` ->
    ``host``, ``guest``, ``joinRequest``). Logs written with ``append`` are
    Redis streams stored beside the record (``rooms/{game_id}/{code}/messages``).

    Every mutation is announced on one pub/sub channel; a listener task
    re-reads the affected paths for local subscriptions.

    On-disconnect operations are kept in a per-client hash. The client keeps
    an expiring lease alive; when the lease is gone any other connected client
    applies and deletes the orphaned operations. ``close()`` applies them
    directly.

    Args:
        client: An existing ``redis.asyncio.Redis`` client. Caller owns
            the lifecycle.
        url: A Redis connection URL. The store creates and owns the client.
            Defaults to ``REDIS_URL`` when neither is given.
        key_prefix: Prefix prepended to every key for namespacing.
    """

    def __init__(
        self,
        *,
        client: Optional[redis.Redis] = None,
        url: Optional[str] = None,
        key_prefix: str = STORE_KEY_PREFIX,
        record_depth: int = 3,
        lease_seconds: float = PRESENCE_LEASE_SECONDS,
        max_retries: int = 20,
    ):
        if client is not None and url is not None:
            raise ValueError("Provide either a Redis client or a URL, not both")
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be > 0")

        self.redis_client: redis.Redis
        if client is not None:
            self._owns_client = False
            self.redis_client = client
        else:
            self._owns_client = True
            self.redis_client = redis.from_url(url or REDIS_URL, decode_responses=True)

        self.client_id = uuid.uuid4().hex
        self._key_prefix = key_prefix
        self._record_depth = record_depth
        self._lease_seconds = lease_seconds
        self._max_retries = max_retries

        self._subscriptions: Dict[int, Subscription] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pubsub = None
        self._listener_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._closed = False
        logger.info(f"Initializing RedisBackend {self.client_id} with key prefix {key_prefix!r}")

    # ---------- keys ----------

    def _key(self, name: str) -> str:
        return f"{self._key_prefix}{name}"

    def _record_key(self, segments: List[str]) -> str:
        return self._key("/".join(segments[: self._record_depth]))

    def _log_key(self, segments: List[str]) -> str:
        return self._key("/".join(segments))

    @property
    def _lease_key(self) -> str:
        return self._key(REDIS_LEASE_KEY.format(client_id=self.client_id))

    def _on_disconnect_key(self, client_id: str) -> str:
        return self._key(REDIS_ON_DISCONNECT_KEY.format(client_id=client_id))

    # ---------- lifecycle ----------

    async def start(self) -> None:
        """Verify the connection, take the presence lease and start listening for changes."""
        ping = self.redis_client.ping()
        if inspect.iscoroutine(ping):
            await ping

        await self._renew_lease()
        self._pubsub = self.redis_client.pubsub()
        await self._pubsub.subscribe(self._key(REDIS_CHANGES_CHANNEL))
        self._listener_task = asyncio.create_task(self._listen())
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())

        connection_kwargs = self.redis_client.connection_pool.connection_kwargs
        host = connection_kwargs.get("host", "unknown")
        port = connection_kwargs.get("port", 6379)
        logger.info(f"RedisBackend {self.client_id} connected to {host}:{port}")

    async def close(self) -> None:
        """Apply this client's on-disconnect operations, then release the connection."""
        if self._closed:
            return
        self._closed = True
        await cancel_and_wait(self._keepalive_task)
        self._keepalive_task = None
        try:
            await self._apply_on_disconnect(self.client_id)
            await self.redis_client.delete(self._lease_key)
        except RedisError as e:
            logger.error(f"Could not apply on-disconnect operations for {self.client_id}: {e}", exc_info=True)

        for subscription in self._subscriptions.values():
            subscription.active = False
        self._subscriptions.clear()

        await cancel_and_wait(self._listener_task)
        await cancel_and_wait(self._dispatch_task)
        self._listener_task = self._dispatch_task = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self._key(REDIS_CHANGES_CHANNEL))
                await self._pubsub.aclose()
            except RedisError as e:
                logger.debug(f"Error closing pub/sub for {self.client_id}: {e}")
            self._pubsub = None

        if self._owns_client:
            await self.redis_client.aclose()
        logger.info(f"RedisBackend {self.client_id} closed")

    # ---------- reads ----------

    async def read_once(self, path: str) -> Any:
        segments = split_path(path)
        if len(segments) < self._record_depth:
            return await self._read_collection(segments)

        key = self._record_key(segments)
        if len(segments) == self._record_depth:
            return await self._read_record(self.redis_client, key, await self._log_keys_under(key))

        field, rest = segments[self._record_depth], segments[self._record_depth + 1 :]
        raw = await self.redis_client.hget(key, field)
        if raw is None:
            if not rest:
                return await self._read_log(self._log_key(segments))
            return None
        return get_child(json.loads(raw), rest)

    async def _read_record(self, conn, key: str, log_keys: List[str] = ()) -> Optional[dict]:
        fields = await conn.hgetall(key)
        result = {}
        for k, v in fields.items():
            result[_text(k)] = json.loads(v)
        for log_key in log_keys:
            entries = await self._read_log(log_key)
            if entries is not None:
                result[log_key[len(key) + 1 :]] = entries
        return result or None

    async def _read_collection(self, segments: List[str]) -> Optional[dict]:
        prefix = self._key("/".join(segments))
        pattern = f"{prefix}/*" if segments else f"{prefix}*"
        result = None
        async for raw_key in self.redis_client.scan_iter(match=pattern, count=100):
            key = _text(raw_key)
            key_segments = split_path(key[len(self._key_prefix) :])
            if len(key_segments) != self._record_depth:
                continue
            if await self.redis_client.type(key) not in ("hash", b"hash"):
                continue
            record = await self._read_record(self.redis_client, key)
            if record is not None:
                result = set_child(result, key_segments[len(segments) :], record)
        return result

    async def _read_log(self, log_key: str) -> Optional[dict]:
        entries = await self.redis_client.xrange(log_key)
        if not entries:
            return None
        return {_text(entry_id): json.loads(_text(fields[_field_name(fields)])) for entry_id, fields in entries}

    async def _log_keys_under(self, record_key: str) -> List[str]:
        return [_text(k) async for k in self.redis_client.scan_iter(match=f"{record_key}/*", count=100)]

    # ---------- writes ----------

    async def write(self, path: str, value: Any) -> None:
        segments = split_path(path)
        if len(segments) < self._record_depth:
            if value is not None:
                raise ValueError(f"Cannot write a whole collection at {path!r}")
            await self._delete_collection(segments)
        elif len(segments) == self._record_depth:
            key = self._record_key(segments)
            log_keys = await self._log_keys_under(key)
            async with self.redis_client.pipeline(transaction=True) as pipe:
                await self._queue_record(pipe, key, log_keys, value)
                await pipe.execute()
        elif len(segments) == self._record_depth + 1:
            key, field = self._record_key(segments), segments[self._record_depth]
            if value is None:
                await self.redis_client.hdel(key, field)
                await self.redis_client.delete(self._log_key(segments))
            else:
                await self.redis_client.hset(key, field, json.dumps(value))
        else:
            await self.transaction(path, lambda _current: value)
            return
        logger.debug(f"Wrote {path}")
        await self._publish(path)

    async def _delete_collection(self, segments: List[str]) -> None:
        prefix = self._key("/".join(segments))
        keys = [k async for k in self.redis_client.scan_iter(match=f"{prefix}/*", count=100)]
        if keys:
            await self.redis_client.delete(*keys)

    async def _queue_record(self, pipe, key: str, log_keys: List[str], value: Any) -> None:
        # Logs still named by the new value are kept as they are, the rest go with the record
        value = value or {}
        log_fields = {log_key[len(key) + 1 :]: log_key for log_key in log_keys}
        stale_logs = [log_key for field, log_key in log_fields.items() if field not in value]
        await pipe.delete(key, *stale_logs)
        mapping = {k: json.dumps(v) for k, v in value.items() if v is not None and k not in log_fields}
        if mapping:
            await pipe.hset(key, mapping=mapping)

    async def append(self, path: str, value: Any) -> str:
        segments = split_path(path)
        if len(segments) != self._record_depth + 1:
            raise ValueError(f"Logs live directly under a record, got {path!r}")
        entry_id = await self.redis_client.xadd(self._log_key(segments), {"value": json.dumps(value)})
        logger.debug(f"Appended {entry_id} to {path}")
        await self._publish(path)
        return _text(entry_id)

    async def transaction(self, path: str, update: Callable[[Any], Any]) -> Any:
        segments = split_path(path)
        if len(segments) < self._record_depth:
            raise ValueError(f"Transactions work on a record or one of its fields, got {path!r}")
        key = self._record_key(segments)
        log_keys = await self._log_keys_under(key) if len(segments) == self._record_depth else []

        for attempt in range(self._max_retries):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    if len(segments) == self._record_depth:
                        current = await self._read_record(pipe, key, log_keys)
                        new_value = update(copy.deepcopy(current))
                        pipe.multi()
                        await self._queue_record(pipe, key, log_keys, new_value)
                    else:
                        field, rest = segments[self._record_depth], segments[self._record_depth + 1 :]
                        raw = await pipe.hget(key, field)
                        field_value = json.loads(raw) if raw is not None else None
                        new_value = update(copy.deepcopy(get_child(field_value, rest)))
                        stored = set_child(field_value, rest, new_value) if rest else new_value
                        pipe.multi()
                        if stored is None:
                            await pipe.hdel(key, field)
                        else:
                            await pipe.hset(key, field, json.dumps(stored))
                    await pipe.execute()
                except WatchError:
                    logger.debug(f"Transaction on {path} raced another writer (attempt {attempt + 1})")
                    continue
            await self._publish(path)
            return new_value
        raise RuntimeError(f"Transaction on {path} did not commit after {self._max_retries} attempts")

    async def _publish(self, path: str) -> None:
        message = json.dumps({"path": "/".join(split_path(path)), "origin": self.client_id})
        await self.redis_client.publish(self._key(REDIS_CHANGES_CHANNEL), message)

    # ---------- subscriptions ----------

    async def subscribe_value(self, path: str, on_change: ValueCallback) -> Subscription:
        subscription = Subscription(path, on_change)
        self._subscriptions[subscription.id] = subscription
        self._queue.put_nowait(("initial", subscription))
        return subscription

    async def subscribe_appended(self, path: str, on_append: AppendCallback) -> Subscription:
        subscription = Subscription(path, on_append, appended=True)
        latest = await self.redis_client.xrevrange(self._log_key(split_path(path)), count=1)
        subscription.last = _text(latest[0][0]) if latest else "0-0"
        self._subscriptions[subscription.id] = subscription
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        self._subscriptions.pop(subscription.id, None)

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    path = json.loads(_text(message["data"]))["path"]
                except (json.JSONDecodeError, KeyError, TypeError) as e:
                    logger.error(f"Malformed change notification {message['data']!r}: {e}")
                    continue
                self._queue.put_nowait(("change", path))
        except asyncio.CancelledError:
            logger.debug(f"Change listener for {self.client_id} cancelled")
            raise
        except RedisError as e:
            logger.error(f"Change listener for {self.client_id} stopped: {e}", exc_info=True)

    async def _dispatch_loop(self) -> None:
        while True:
            kind, item = await self._queue.get()
            try:
                if kind == "initial":
                    await self._refresh_value(item, force=True)
                else:
                    await self._dispatch_change(item)
            except (RedisError, ValueError) as e:
                # ValueError: a stored field that is not JSON; skip it and keep serving the rest
                logger.error(f"Failed to dispatch {kind} {item}: {e}", exc_info=True)

    async def _dispatch_change(self, path: str) -> None:
        for subscription in list(self._subscriptions.values()):
            if not subscription.active:
                continue
            if subscription.appended:
                if split_path(subscription.path) == split_path(path):
                    await self._deliver_appended(subscription)
            elif subscription.delivered and paths_overlap(subscription.path, path):
                await self._refresh_value(subscription)

    async def _refresh_value(self, subscription: Subscription, force: bool = False) -> None:
        value = await self.read_once(subscription.path)
        if not force and subscription.delivered and value == subscription.last:
            return
        subscription.last = value
        subscription.delivered = True
        self._deliver(subscription, (value,))

    async def _deliver_appended(self, subscription: Subscription) -> None:
        log_key = self._log_key(split_path(subscription.path))
        entries = await self.redis_client.xrange(log_key, min=f"({subscription.last}", max="+")
        for entry_id, fields in entries:
            subscription.last = _text(entry_id)
            self._deliver(subscription, (subscription.last, json.loads(_text(fields[_field_name(fields)]))))

    @staticmethod
    def _deliver(subscription: Subscription, args: tuple) -> None:
        if not subscription.active:
            return
        try:
            subscription.callback(*args)
        except Exception as e:
            logger.error(f"Subscriber callback for {subscription.path} failed: {e}", exc_info=True)

    # ---------- on-disconnect ----------

    async def on_disconnect_set(self, path: str, value: Any) -> None:
        operation = json.dumps({"op": "set", "value": value})
        await self.redis_client.hset(self._on_disconnect_key(self.client_id), "/".join(split_path(path)), operation)

    async def on_disconnect_remove(self, path: str) -> None:
        operation = json.dumps({"op": "remove"})
        await self.redis_client.hset(self._on_disconnect_key(self.client_id), "/".join(split_path(path)), operation)

    async def cancel_on_disconnect(self, path: str) -> None:
        await self.redis_client.hdel(self._on_disconnect_key(self.client_id), "/".join(split_path(path)))

    async def _renew_lease(self) -> None:
        await self.redis_client.set(self._lease_key, self.client_id, px=int(self._lease_seconds * 1000))

    async def _keepalive_loop(self) -> None:
        interval = self._lease_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await self._renew_lease()
                await self._reap_dead_clients()
            except RedisError as e:
                logger.warning(f"Lease renewal for {self.client_id} failed: {e}")

    async def _reap_dead_clients(self) -> None:
        marker = self._on_disconnect_key("")
        async for raw_key in self.redis_client.scan_iter(match=f"{marker}*", count=100):
            owner = _text(raw_key)[len(marker) :]
            if owner == self.client_id:
                continue
            if await self.redis_client.exists(self._key(REDIS_LEASE_KEY.format(client_id=owner))):
                continue
            lock_key = self._key(REDIS_REAPER_LOCK_KEY.format(client_id=owner))
            locked = await self.redis_client.set(lock_key, self.client_id, nx=True, px=int(self._lease_seconds * 1000))
            if not locked:
                continue
            logger.info(f"Client {owner} lost its lease, applying its on-disconnect operations")
            await self._apply_on_disconnect(owner)

    async def _apply_on_disconnect(self, owner: str) -> None:
        key = self._on_disconnect_key(owner)
        operations = await self.redis_client.hgetall(key)
        await self.redis_client.delete(key)
        for raw_path, raw_operation in operations.items():
            path = _text(raw_path)
            operation = json.loads(_text(raw_operation))
            if operation["op"] == "set":
                await self.write(path, operation.get("value"))
            else:
                await self.remove(path)
        if operations:
            logger.debug(f"Applied {len(operations)} on-disconnect operations for {owner}")


def _field_name(fields: dict) -> Any:
    return "value" if "value" in fields else b"value"
