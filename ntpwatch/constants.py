"""
ntpwatch - Application constants.

Centralizes protocol numbers and defaults for clarity and maintainability.
"""

# NTP wire format (RFC 5905 header layout)
NTP_PACKET_SIZE = 48
# LI=0 (no warning), VN=3, Mode=3 (client) -> 0b00_011_011
NTP_CLIENT_REQUEST_FLAGS = 0x1B
NTP_STRATUM_OFFSET = 1
NTP_TRANSMIT_SECONDS_OFFSET = 40
MAX_STRATUM = 255

# Seconds between the NTP era (1900-01-01) and the Unix epoch (1970-01-01)
NTP_TO_UNIX_EPOCH_OFFSET = 2208988800

# Probe defaults
DEFAULT_NTP_PORT = 123
DEFAULT_TIMEOUT_SECONDS = 10

# Config defaults (used as fallbacks in .get() when key missing)
DEFAULT_INTERVAL_SECONDS = 60
DEFAULT_MAX_HEARTBEATS = 100

MAX_PORT = 65535
MS_PER_SECOND = 1000
