"""Collection names and shared constants."""

ASSIGNMENTS = "assignments"
SESSIONS = "sessions"

DEFAULT_STRIKE_LIMIT = 3

# Placed in a field by a client to request the store's commit time
SERVER_TIMESTAMP = "__server_timestamp__"
