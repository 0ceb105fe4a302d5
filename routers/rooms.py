from fastapi import APIRouter, HTTPException, Request

from logging_config import get_logger
from room_codes import is_valid_room_code, normalize_room_code
from schemas.rooms import ActiveRoomsResponse, RoomDetailsResponse, RoomRecord
from session.room import open_room_codes
from store_keys import ROOM_COLLECTION_PATH, room_path

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/{game_id}", response_model=ActiveRoomsResponse)
async def list_active_rooms(game_id: str, request: Request):
    """Codes of the rooms of ``game_id`` whose host is present and that nobody joined yet."""
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Active rooms request for game {game_id} from {client_host}")

    rooms = await request.app.state.store.read_once(ROOM_COLLECTION_PATH.format(game_id=game_id))
    codes = open_room_codes(rooms)
    logger.debug(f"Game {game_id} has {len(codes)} open rooms")
    return ActiveRoomsResponse(game_id=game_id, rooms=codes)


@rooms_router.get("/{game_id}/{room_code}", response_model=RoomDetailsResponse)
async def get_room_details(game_id: str, room_code: str, request: Request):
    """
    Get the state of one room.

    Returns:
    - host / guest: liveness flags of both participants
    - is_open: whether a guest could still join
    - has_pending_request: whether a join request awaits the host's answer
    - message_count: number of messages exchanged so far
    """
    code = normalize_room_code(room_code)
    if not is_valid_room_code(code):
        logger.warning(f"Room details failed: {room_code!r} is not a valid room code")
        raise HTTPException(status_code=404, detail="Room not found")

    raw = await request.app.state.store.read_once(room_path(game_id, code))
    if not isinstance(raw, dict):
        logger.warning(f"Room details failed: Room {code} not found in game {game_id}")
        raise HTTPException(status_code=404, detail="Room not found")

    record = RoomRecord.model_validate(raw)
    messages = raw.get("messages")
    return RoomDetailsResponse(
        game_id=game_id,
        room_code=code,
        host=record.host,
        guest=record.guest,
        is_open=record.is_open,
        has_pending_request=record.has_pending_request,
        message_count=len(messages) if isinstance(messages, dict) else 0,
    )
