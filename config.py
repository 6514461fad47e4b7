# config.py — Trail map overlay configuration
# Edit this file to change the admin API endpoint, layer styling, viewport fitting, etc.

# ── Admin API ────────────────────────────────────────────────────────
# Base URL of the backend serving the admin endpoints.
API_BASE_URL = "http://localhost:8080"

# Endpoint returning the list of raw trail records.
TRAILS_ENDPOINT = "/admin/trails"

# Request timeout (seconds) and retry policy for the trail fetch.
API_TIMEOUT = 30
API_MAX_RETRIES = 3
API_RETRY_DELAY = 2

# ── Source / layer identifiers ───────────────────────────────────────
# These four ids are owned by the overlay; nothing else may write to them.
SOURCE_ID = "trails-source"
LINE_LAYER_ID = "trails-line"
HIGHLIGHT_LAYER_ID = "trails-line-highlight"
POINT_LAYER_ID = "trails-points"

# Highlight filter value that no real trail id can have.
NO_MATCH_ID = "___no_match___"

# ── Layer styling ────────────────────────────────────────────────────
LINE_PAINT = {
    "line-color": "hsl(173, 80%, 40%)",
    "line-width": 3,
    "line-opacity": 0.8,
}

HIGHLIGHT_PAINT = {
    "line-color": "hsl(48, 95%, 50%)",
    "line-width": 5,
    "line-opacity": 0.9,
}

POINT_PAINT = {
    "circle-radius": 8,
    "circle-color": "hsl(173, 80%, 40%)",
    "circle-stroke-color": "hsl(222, 47%, 6%)",
    "circle-stroke-width": 2,
}

# ── Viewport fitting ─────────────────────────────────────────────────
# Fit to the first trail line: generous padding and a zoom ceiling so very
# short trails are not zoomed in to street level.
LINE_FIT_PADDING = 80
LINE_FIT_MAX_ZOOM = 15

# Fallback fit over every feature when no trail line exists.
ALL_FIT_PADDING = 50

# ── Interaction ──────────────────────────────────────────────────────
CURSOR_POINTER = "pointer"
CURSOR_DEFAULT = ""

# Max distance (degrees) between the pointer and a feature for the in-memory
# surface to count it as hit (~30m).
HIT_TOLERANCE = 0.0003
