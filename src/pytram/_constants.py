"""Internal constants shared across the library."""

import math

DEFAULT_SERVER_ADDRESS = "ws://localhost:3000"
DEFAULT_TRAM_ID = "tram_01"

# Assumption University campus, used when no fallback route gives an origin.
DEFAULT_CENTER_LATITUDE = 13.612565
DEFAULT_CENTER_LONGITUDE = 100.836516

# ------------------------------------------------------------------
# Wire events
# ------------------------------------------------------------------

EVENT_WELCOME = "welcome"
EVENT_GPS_DATA = "gps-data"
EVENT_GPS_DATA_UPDATE = "gps-data-update"
EVENT_GPS_ERROR = "gps-error"
EVENT_PONG = "pong"
EVENT_REQUEST_GPS_DATA = "request-gps-data"
EVENT_PING = "ping"

SOURCE_REQUEST = "websocket-request"
SOURCE_BROADCAST = "websocket-broadcast"
SOURCE_MANUAL = "manual"
SOURCE_FALLBACK = "fallback"

LOCATION_EVENT_SOURCES: dict[str, str] = {
    EVENT_GPS_DATA: SOURCE_REQUEST,
    EVENT_GPS_DATA_UPDATE: SOURCE_BROADCAST,
}

# ------------------------------------------------------------------
# Scene projection / motion
# ------------------------------------------------------------------

SCENE_SCALE = 100_000.0
BASE_HEIGHT = -0.3
MODEL_FORWARD_OFFSET = -math.pi / 2
