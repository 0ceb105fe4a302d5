import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

if REDIS_PASSWORD:
    REDIS_URL = f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}"
else:
    REDIS_URL = f"redis://{REDIS_HOST}:{REDIS_PORT}"

DOMAIN = os.getenv("DOMAIN", "localhost")

# Namespace for every key the Redis store writes
STORE_KEY_PREFIX = os.getenv("STORE_KEY_PREFIX", "otpg:")

# Rooms are grouped per game: rooms/{game_id}/{room_code}
GAME_ID = os.getenv("GAME_ID", "default")

# No I, O, 0 or 1 so codes survive being read aloud
ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ROOM_CODE_LENGTH = 6
# Total tries when a freshly generated code is already taken (2 = one regeneration)
ROOM_CODE_MAX_ATTEMPTS = int(os.getenv("ROOM_CODE_MAX_ATTEMPTS", 2))

# Lifetime of the Redis lease that guards a client's on-disconnect operations
PRESENCE_LEASE_SECONDS = float(os.getenv("PRESENCE_LEASE_SECONDS", 10))

PEER_ID_PREFIX = "otpg_"
PEER_GUEST_PREFIX = "otpg_guest_"
TRANSPORT_OPEN_TIMEOUT = float(os.getenv("TRANSPORT_OPEN_TIMEOUT", 15))
BROKER_URL = os.getenv("BROKER_URL", f"ws://{DOMAIN}:8000")
