"""Internal constants shared across the library."""

# ------------------------------------------------------------------
# Confidence model defaults
# ------------------------------------------------------------------

# Linear decay: 15% of confidence is lost per 24 hours.
DECAY_RATE_PER_HOUR = 0.15 / 24
VISIBILITY_THRESHOLD = 0.3

# Conflict blend: prior belief outweighs a single incoming report.
PRIOR_WEIGHT = 0.6
INCOMING_WEIGHT = 0.4

# Reports submitted through the observed form always start fully trusted.
DEFAULT_BASE_CONFIDENCE = 1.0

# ------------------------------------------------------------------
# Engine defaults
# ------------------------------------------------------------------

DUPLICATE_COOLDOWN_SECONDS = 15 * 60
SUBSCRIBER_BUFFER_SIZE = 256
RECENT_REPORTS_LIMIT = 50

ENTITY_KEY_SEPARATOR = ":"

SECONDS_PER_HOUR = 3600.0

# Wire names used by the observed client, mapped to canonical status values.
STATUS_ALIASES: dict[str, str] = {
    "in_stock": "available",
    "instock": "available",
    "out_of_stock": "unavailable",
    "outofstock": "unavailable",
}
