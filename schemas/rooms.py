from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    HOST = "host"
    GUEST = "guest"


class JoinStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class JoinRequest(BaseModel):
    status: JoinStatus


class RoomRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    host: bool = False
    guest: bool = False
    join_request: Optional[JoinRequest] = Field(default=None, alias="joinRequest")

    @property
    def is_open(self) -> bool:
        """A room is listed while its host is present and nobody has joined."""
        return self.host and not self.guest

    @property
    def has_pending_request(self) -> bool:
        return self.join_request is not None and self.join_request.status == JoinStatus.PENDING

    def to_store(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: Role = Field(alias="from")
    data: Any = None

    def to_store(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class ActiveRoomsResponse(BaseModel):
    game_id: str
    rooms: list[str]


class RoomDetailsResponse(BaseModel):
    game_id: str
    room_code: str
    host: bool
    guest: bool
    is_open: bool
    has_pending_request: bool
    message_count: int


class PeerFrame(BaseModel):
    """Frame exchanged between a transport endpoint and the peer broker."""

    type: str  # registered | connect | open | data | close | error
    channel: Optional[str] = None
    src: Optional[str] = None
    dst: Optional[str] = None
    payload: Any = None
    reason: Optional[str] = None
