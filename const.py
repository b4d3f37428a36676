"""Configuration constants for the force gauge reader."""

# Polling cadence for characteristics that only support reads
POLL_INTERVAL_MS = 100

# Display conversion, readings are stored in pounds
LBS_TO_KG = 0.453592
UNIT_LBS = "lbs"
UNIT_KG = "kg"
UNITS = (UNIT_LBS, UNIT_KG)

# Rolling history shown by the graph
HISTORY_LENGTH = 200

# Scanning
DEFAULT_SCAN_TIME = 5.0
# Seconds between adapter checks while Bluetooth is unavailable
ADAPTER_RECHECK_INTERVAL = 5.0
DEFAULT_NAME_PREFIX = ""
UNKNOWN_DEVICE_NAME = "Unknown Device"

# HTTP API
API_HOST = "0.0.0.0"
API_PORT = 5000
REQUEST_TIMEOUT = 30

# Reasons containing this text are expected while a characteristic notifies
READ_NOT_PERMITTED = "reading is not permitted"

FALLBACK_ADVISORY = "Notifications not supported, using periodic reads instead"

POWER_STATE_MESSAGES = {
    "off": "Bluetooth is turned off. Please enable Bluetooth.",
    "unauthorized": "Bluetooth permission denied. Please allow Bluetooth access.",
    "unsupported": "Bluetooth is not supported on this device.",
    "resetting": "Bluetooth is resetting...",
    "unknown": "Bluetooth state is unknown.",
}
