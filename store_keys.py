# Store paths (shared by every StoreAdapter implementation)
ROOM_COLLECTION_PATH = "rooms/{game_id}"  # every room of one game
ROOM_PATH = "rooms/{game_id}/{code}"  # room record
ROOM_HOST_PATH = ROOM_PATH + "/host"  # host liveness flag
ROOM_GUEST_PATH = ROOM_PATH + "/guest"  # guest liveness flag
ROOM_JOIN_REQUEST_PATH = ROOM_PATH + "/joinRequest"  # {status}
ROOM_JOIN_STATUS_PATH = ROOM_JOIN_REQUEST_PATH + "/status"
ROOM_MESSAGES_PATH = ROOM_PATH + "/messages"  # append-only log of {from, data}

# Redis keys (all prefixed with STORE_KEY_PREFIX)
REDIS_CHANGES_CHANNEL = "changes"  # pub/sub channel, one message per mutated path
REDIS_LEASE_KEY = "lease:{client_id}"  # expiring key kept alive by a connected client
REDIS_ON_DISCONNECT_KEY = "ondisconnect:{client_id}"  # hash path -> pending operation
REDIS_REAPER_LOCK_KEY = "reaping:{client_id}"  # held by the peer applying a dead client's operations

# **Example `rooms/{game_id}/{code}` record**
# - `host` = true while the creator is connected
# - `guest` = true once a guest finished joining
# - `joinRequest` = {"status": "pending" | "accepted" | "rejected"} (optional)
# - `messages` = ordered {key: {"from": "host" | "guest", "data": ...}}
#
# In Redis the record is a hash whose field values are JSON, and `messages`
# is a stream stored beside it at `rooms/{game_id}/{code}/messages`.


def room_path(game_id: str, code: str) -> str:
    return ROOM_PATH.format(game_id=game_id, code=code)
