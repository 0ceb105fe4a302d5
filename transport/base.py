"""
Direct peer-to-peer channel between host and guest, addressed by endpoint id
"""

import abc
from typing import Any

from pyee.asyncio import AsyncIOEventEmitter

from errors import TransportError


class PeerUnavailable(TransportError):
    """Nobody listens on the endpoint id we tried to reach."""


class TransportChannel(AsyncIOEventEmitter, abc.ABC):
    """Bidirectional channel to one remote endpoint.

    Events:
        - ``open``: the channel can carry data.
        - ``data`` (payload): a payload arrived from the remote side.
        - ``close``: the channel closed, from either side.
        - ``error`` (TransportError): the channel failed. Only emitted while
          somebody listens for it.
    """

    def __init__(self, local_id: str, remote_id: str):
        super().__init__()
        self.local_id = local_id
        self.remote_id = remote_id

    @property
    @abc.abstractmethod
    def is_open(self) -> bool: ...

    @abc.abstractmethod
    async def send(self, data: Any) -> None:
        """Send a JSON-serializable payload to the remote side."""
        ...

    @abc.abstractmethod
    async def close(self) -> None: ...

    def _fail(self, exc: TransportError) -> None:
        if self.listeners("error"):
            self.emit("error", exc)


class TransportEndpoint(AsyncIOEventEmitter, abc.ABC):
    """A local endpoint registered under an id.

    Events:
        - ``connection`` (TransportChannel): a remote endpoint connected to us.
    """

    def __init__(self) -> None:
        super().__init__()
        self.id = None

    @abc.abstractmethod
    async def open(self, local_id: str) -> None:
        """Register under ``local_id``. Raises ``IdCollision`` when the id is taken."""
        ...

    @abc.abstractmethod
    async def connect(self, remote_id: str) -> TransportChannel:
        """
        Start a channel to ``remote_id``. The channel may not be open yet;
        wait for its ``open`` event. Raises ``PeerUnavailable`` when the
        remote id is known to be free.
        """
        ...

    @abc.abstractmethod
    async def close(self) -> None: ...
