"""Internal constants shared across the library."""

DEFAULT_PORT = 8123
EVENT_STATE_CHANGED = "state_changed"

# ------------------------------------------------------------------
# Remote actions
# ------------------------------------------------------------------

# Domains that expose their own turn_on / turn_off / toggle services.
TURN_ON_OFF_DOMAINS: tuple[str, ...] = ("light", "switch")

# Generic domain whose services accept any entity id.
DEFAULT_SERVICE_DOMAIN = "homeassistant"

# ------------------------------------------------------------------
# Websocket reconnect backoff (seconds)
# ------------------------------------------------------------------

RECONNECT_INITIAL_DELAY = 1.0
