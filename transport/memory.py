import asyncio
import copy
from typing import Any, Dict, List, Optional

from errors import IdCollision, TransportError
from logging_config import get_logger
from transport.base import PeerUnavailable, TransportChannel, TransportEndpoint

logger = get_logger(__name__)


class InMemoryTransportHub:
    """Plays the peer broker for endpoints living in the same process.

    Args:
        auto_open: open new channels right away. With ``False`` channels stay
            closed until ``open_pending()`` is called, which is how tests
            exercise the open timeout.
    """

    def __init__(self, *, auto_open: bool = True):
        self.auto_open = auto_open
        self._endpoints: Dict[str, "InMemoryEndpoint"] = {}
        self._pending: List["InMemoryChannel"] = []

    def endpoint(self) -> "InMemoryEndpoint":
        return InMemoryEndpoint(self)

    def open_pending(self) -> None:
        pending, self._pending = self._pending, []
        for channel in pending:
            channel._mark_open()

    def _register(self, local_id: str, endpoint: "InMemoryEndpoint") -> None:
        if local_id in self._endpoints:
            raise IdCollision(f"Endpoint id {local_id} is taken")
        self._endpoints[local_id] = endpoint

    def _unregister(self, local_id: str) -> None:
        self._endpoints.pop(local_id, None)

    def _lookup(self, remote_id: str) -> Optional["InMemoryEndpoint"]:
        return self._endpoints.get(remote_id)


class InMemoryChannel(TransportChannel):
    def __init__(self, local_id: str, remote_id: str):
        super().__init__(local_id, remote_id)
        self.peer: Optional["InMemoryChannel"] = None
        self._open = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._open

    def _mark_open(self) -> None:
        if self._open or self._closed:
            return
        self._open = True
        self.emit("open")

    async def send(self, data: Any) -> None:
        if not self._open:
            raise TransportError(f"Channel {self.local_id} -> {self.remote_id} is not open")
        asyncio.get_running_loop().call_soon(self.peer._receive, copy.deepcopy(data))

    def _receive(self, data: Any) -> None:
        if self._open:
            self.emit("data", data)

    async def close(self) -> None:
        if self._closed:
            return
        self._shut()
        if self.peer is not None:
            asyncio.get_running_loop().call_soon(self.peer._shut)

    def _shut(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._open = False
        self.emit("close")


class InMemoryEndpoint(TransportEndpoint):
    def __init__(self, hub: InMemoryTransportHub):
        super().__init__()
        self._hub = hub
        self._channels: List[InMemoryChannel] = []

    async def open(self, local_id: str) -> None:
        self._hub._register(local_id, self)
        self.id = local_id
        logger.debug(f"Endpoint {local_id} open")

    async def connect(self, remote_id: str) -> InMemoryChannel:
        remote = self._hub._lookup(remote_id)
        if remote is None:
            raise PeerUnavailable(f"Could not connect to peer {remote_id}")

        local_channel = InMemoryChannel(self.id, remote_id)
        remote_channel = InMemoryChannel(remote_id, self.id)
        local_channel.peer, remote_channel.peer = remote_channel, local_channel
        self._channels.append(local_channel)
        remote._channels.append(remote_channel)

        loop = asyncio.get_running_loop()
        loop.call_soon(remote.emit, "connection", remote_channel)
        if self._hub.auto_open:
            loop.call_soon(remote_channel._mark_open)
            loop.call_soon(local_channel._mark_open)
        else:
            self._hub._pending.extend([remote_channel, local_channel])
        return local_channel

    async def close(self) -> None:
        if self.id is not None:
            self._hub._unregister(self.id)
        channels, self._channels = self._channels, []
        for channel in channels:
            await channel.close()
