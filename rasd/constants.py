# Relay wire constants (event names, envelope keys, roles)

# Envelope keys
K_EVENT = "event"
K_ROOM = "roomId"
K_FROM = "from"
K_ROLE = "role"
K_DATA = "data"
K_X = "x"
K_Y = "y"
K_TEXT = "text"
K_TS = "ts"
K_MESSAGE = "message"
K_REASON = "reason"
K_VIEWERS = "viewers"

# Inbound events
EV_JOIN_ROOM = "join-room"
EV_SIGNAL = "signal"
EV_POINTER = "pointer"
EV_CHAT_MESSAGE = "chat-message"

# Outbound-only events
EV_USER_JOINED = "user-joined"
EV_USER_LEFT = "user-left"
EV_ROOM_NOT_FOUND = "room-not-found"
EV_ROOM_ALREADY_HOSTED = "room-already-hosted"
EV_SESSION_ENDED = "session-ended"

# Roles (wire values)
ROLE_HOST = "host"
ROLE_VIEWER = "viewer"
ROLES = (ROLE_HOST, ROLE_VIEWER)

# signal data.type values
SIGNAL_OFFER = "offer"
SIGNAL_ANSWER = "answer"
SIGNAL_CANDIDATE = "candidate"
SIGNAL_TYPES = (SIGNAL_OFFER, SIGNAL_ANSWER, SIGNAL_CANDIDATE)

# Nested chat body keys (desktop agent variant)
B_CHAT_TEXT = "text"
B_CHAT_FROM = "from"
B_CHAT_TS = "ts"

# session-ended reasons
REASON_HOST_LEFT = "host-left"
REASON_SHUTDOWN = "relay-shutdown"

ROOM_ID_MAX_CHARS = 64
CHAT_TEXT_MAX_CHARS = 4000
