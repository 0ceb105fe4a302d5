from contextlib import asynccontextmanager
from typing import Dict, Tuple
import os

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from backend import RedisBackend
from logging_config import get_logger, setup_logging
from routers.rooms import rooms_router
from schemas.rooms import PeerFrame

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # A store placed on app.state beforehand (tests) is used as is
    owned = None
    if getattr(app.state, "store", None) is None:
        owned = RedisBackend()
        await owned.start()
        app.state.store = owned
    try:
        yield
    finally:
        if owned is not None:
            await owned.close()
            app.state.store = None


app = FastAPI(lifespan=lifespan)

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins
    allow_credentials=True,
    allow_methods=["*"],  # Allow all HTTP methods
    allow_headers=["*"],  # Allow all headers
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")

# Registered endpoints on this instance
# Format: {peer_id: websocket}
# NOTE: Peers are tracked in memory, so both ends of a channel must reach the same instance.
peer_connections: Dict[str, WebSocket] = {}

# Open channels between two peers
# Format: {channel_id: (initiator_id, acceptor_id)}
channel_peers: Dict[str, Tuple[str, str]] = {}

RELAYED_FRAMES = {"connect", "open", "data", "close"}


async def send_frame(peer_id: str, frame: PeerFrame) -> None:
    websocket = peer_connections.get(peer_id)
    if websocket is None:
        logger.debug(f"Dropping {frame.type} frame for unknown peer {peer_id}")
        return
    try:
        await websocket.send_text(frame.model_dump_json(exclude_none=True))
    except Exception as e:
        logger.warning(f"Error sending {frame.type} frame to peer {peer_id}: {e}")


async def relay_frame(src: str, frame: PeerFrame) -> None:
    """Forward a frame to the other end of its channel, stamped with the sender's id."""
    if frame.type not in RELAYED_FRAMES or not frame.channel:
        logger.warning(f"Ignoring {frame.type} frame without a relayable channel from peer {src}")
        return

    if frame.type == "connect":
        if not frame.dst or frame.dst not in peer_connections:
            logger.info(f"Peer {src} tried to reach unavailable peer {frame.dst}")
            await send_frame(src, PeerFrame(type="error", channel=frame.channel, reason="peer-unavailable"))
            return
        channel_peers[frame.channel] = (src, frame.dst)
        logger.info(f"Channel {frame.channel} opening: {src} -> {frame.dst}")
    else:
        peers = channel_peers.get(frame.channel)
        if peers is None or src not in peers:
            logger.debug(f"Frame {frame.type} from {src} for unknown channel {frame.channel}")
            return
        frame.dst = peers[1] if peers[0] == src else peers[0]
        if frame.type == "close":
            del channel_peers[frame.channel]
            logger.info(f"Channel {frame.channel} closed by {src}")

    frame.src = src
    await send_frame(frame.dst, frame)


async def close_channels_of(peer_id: str) -> None:
    departed = [(channel_id, peers) for channel_id, peers in channel_peers.items() if peer_id in peers]
    for channel_id, _ in departed:
        del channel_peers[channel_id]
    for channel_id, peers in departed:
        other = peers[1] if peers[0] == peer_id else peers[0]
        await send_frame(other, PeerFrame(type="close", channel=channel_id, src=peer_id))
        logger.debug(f"Closed channel {channel_id} of departed peer {peer_id}")


@app.websocket("/peers/{peer_id}/ws")
async def peer_endpoint(peer_id: str, websocket: WebSocket):
    """Register an endpoint under ``peer_id`` and relay its channel frames.

    The first frame sent is ``registered``, or an ``error`` with reason
    ``unavailable-id`` followed by close code 1008 when the id is taken.
    """
    logger.info(f"Peer registration attempt for {peer_id}")
    await websocket.accept()

    if peer_id in peer_connections:
        logger.info(f"Peer registration rejected: {peer_id} is taken")
        await websocket.send_text(PeerFrame(type="error", reason="unavailable-id").model_dump_json(exclude_none=True))
        await websocket.close(code=1008, reason="ID taken")
        return

    peer_connections[peer_id] = websocket
    try:
        await websocket.send_text(PeerFrame(type="registered", dst=peer_id).model_dump_json(exclude_none=True))
        logger.info(f"Peer {peer_id} registered ({len(peer_connections)} peers)")

        while True:
            data = await websocket.receive_text()
            try:
                frame = PeerFrame.model_validate_json(data)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed frame from peer {peer_id}: {e}")
                continue
            await relay_frame(peer_id, frame)

    except WebSocketDisconnect:
        logger.info(f"Peer {peer_id} disconnected")
    except Exception as e:
        logger.error(f"Error relaying frames for peer {peer_id}: {e}", exc_info=True)
    finally:
        if peer_connections.get(peer_id) is websocket:
            del peer_connections[peer_id]
        await close_channels_of(peer_id)
