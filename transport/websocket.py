import asyncio
import uuid
from typing import Any, Dict, Optional

import websockets
from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection, connect

from constants import BROKER_URL
from errors import IdCollision, TransportError
from logging_config import get_logger
from schemas.rooms import PeerFrame
from transport.base import PeerUnavailable, TransportChannel, TransportEndpoint
from utils import cancel_and_wait

logger = get_logger(__name__)


class WebSocketChannel(TransportChannel):
    """One channel multiplexed over the endpoint's broker connection."""

    def __init__(self, endpoint: "WebSocketEndpoint", channel_id: str, remote_id: str):
        super().__init__(endpoint.id, remote_id)
        self.channel_id = channel_id
        self._endpoint = endpoint
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
            raise TransportError(f"Channel {self.channel_id} is not open")
        await self._endpoint._send(PeerFrame(type="data", channel=self.channel_id, dst=self.remote_id, payload=data))

    async def close(self) -> None:
        if self._closed:
            return
        try:
            await self._endpoint._send(PeerFrame(type="close", channel=self.channel_id, dst=self.remote_id))
        except TransportError as e:
            logger.debug(f"Close frame for channel {self.channel_id} not sent: {e}")
        self._shut()

    def _shut(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._open = False
        self._endpoint._channels.pop(self.channel_id, None)
        self.emit("close")


class WebSocketEndpoint(TransportEndpoint):
    """Endpoint registered with the peer broker over a websocket.

    The broker answers the registration with a ``registered`` frame, or with an
    ``error`` frame of reason ``unavailable-id`` when another endpoint holds
    the id already.
    """

    def __init__(self, broker_url: str = BROKER_URL):
        super().__init__()
        self.broker_url = broker_url.rstrip("/")
        self._ws: Optional[ClientConnection] = None
        self._reader: Optional[asyncio.Task] = None
        self._channels: Dict[str, WebSocketChannel] = {}

    async def open(self, local_id: str) -> None:
        url = f"{self.broker_url}/peers/{local_id}/ws"
        try:
            self._ws = await connect(url)
        except (OSError, websockets.InvalidHandshake) as e:
            logger.error(f"Failed to reach peer broker at {self.broker_url}: {e}")
            raise TransportError(f"Peer broker unreachable: {e}") from e

        try:
            frame = PeerFrame.model_validate_json(await self._ws.recv())
        except websockets.ConnectionClosed as e:
            raise TransportError(f"Peer broker closed the connection: {e}") from e
        if frame.type == "error":
            await self._ws.close()
            self._ws = None
            if frame.reason == "unavailable-id":
                raise IdCollision(f"Endpoint id {local_id} is taken")
            raise TransportError(frame.reason or "registration failed")

        self.id = local_id
        self._reader = asyncio.create_task(self._read_loop(), name=f"peer-reader-{local_id}")
        logger.debug(f"Endpoint {local_id} registered with {self.broker_url}")

    async def connect(self, remote_id: str) -> WebSocketChannel:
        channel = WebSocketChannel(self, uuid.uuid4().hex, remote_id)
        self._channels[channel.channel_id] = channel
        await self._send(PeerFrame(type="connect", channel=channel.channel_id, dst=remote_id))
        return channel

    async def close(self) -> None:
        for channel in list(self._channels.values()):
            await channel.close()
        if self._reader is not None:
            await cancel_and_wait(self._reader)
            self._reader = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def _send(self, frame: PeerFrame) -> None:
        if self._ws is None:
            raise TransportError("Endpoint is not open")
        try:
            await self._ws.send(frame.model_dump_json(exclude_none=True))
        except websockets.ConnectionClosed as e:
            raise TransportError(f"Peer broker connection lost: {e}") from e

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    frame = PeerFrame.model_validate_json(raw)
                except ValidationError as e:
                    logger.warning(f"Ignoring malformed frame from broker: {e}")
                    continue
                await self._dispatch(frame)
        except (websockets.ConnectionClosedError, TransportError) as e:
            logger.warning(f"Peer broker connection for {self.id} dropped: {e}")
        finally:
            for channel in list(self._channels.values()):
                channel._shut()

    async def _dispatch(self, frame: PeerFrame) -> None:
        channel = self._channels.get(frame.channel) if frame.channel else None

        if frame.type == "connect":
            channel = WebSocketChannel(self, frame.channel, frame.src)
            self._channels[frame.channel] = channel
            self.emit("connection", channel)
            await self._send(PeerFrame(type="open", channel=frame.channel, dst=frame.src))
            channel._mark_open()
        elif channel is None:
            logger.debug(f"Frame {frame.type} for unknown channel {frame.channel}")
        elif frame.type == "open":
            channel._mark_open()
        elif frame.type == "data":
            channel.emit("data", frame.payload)
        elif frame.type == "close":
            channel._shut()
        elif frame.type == "error":
            if frame.reason == "peer-unavailable":
                channel._fail(PeerUnavailable(f"Could not connect to peer {channel.remote_id}"))
            else:
                channel._fail(TransportError(frame.reason or "channel error"))
            channel._shut()
