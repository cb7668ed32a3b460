"""Compile-time constants for the wootbridge package.

These are values baked into code that change only on code updates,
NOT between environments. For runtime settings, see config.py.
"""

# ──────────────────────────────────────────────────────────────────────
# Cache
# ──────────────────────────────────────────────────────────────────────
DEFAULT_CONTACT_TTL = 10 * 60.0          # contacts change rarely
DEFAULT_CONVERSATION_TTL = 5 * 60.0      # status flips often (resolved/reopened)
DEFAULT_SWEEP_INTERVAL = 60.0

CONTACT_KEY_PREFIX = "contact"
CONVERSATION_KEY_PREFIX = "conversation"

# ──────────────────────────────────────────────────────────────────────
# Media Dispatch
# ──────────────────────────────────────────────────────────────────────
DEFAULT_MEDIA_MAX_CONCURRENT = 3
MEDIA_MAX_CONCURRENT_LIMIT = 10
DEFAULT_MEDIA_STAGGER_DELAY = 2.0
DEFAULT_MEDIA_ITEM_TIMEOUT = 60.0
MEDIA_ITEM_TIMEOUT_LIMIT = 5 * 60.0
DEFAULT_MEDIA_DOWNLOAD_TIMEOUT = 30.0

DEFAULT_MEDIA_RATE_LIMIT = 10            # transfers per window
DEFAULT_MEDIA_RATE_WINDOW = 60.0
DEFAULT_BREAKER_THRESHOLD = 5
DEFAULT_BREAKER_RESET_TIMEOUT = 2 * 60.0

# Rate limiter poll interval when the window math yields no positive delay
RATE_LIMIT_POLL_INTERVAL = 0.1

# Helpdesk attachment file_type -> MIME type
FILE_TYPE_MIME = {
    "image": "image/jpeg",
    "audio": "audio/ogg",
    "video": "video/mp4",
    "file": "application/octet-stream",
}
DEFAULT_MIME_TYPE = "application/octet-stream"

# MIME type -> file extension for generated file names
MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "audio/ogg": "ogg",
    "audio/ogg; codecs=opus": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "video/quicktime": "mov",
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "text/plain": "txt",
}
DEFAULT_EXTENSION = "bin"

# ──────────────────────────────────────────────────────────────────────
# WhatsApp
# ──────────────────────────────────────────────────────────────────────
WHATSAPP_USER_SUFFIX = "@s.whatsapp.net"
WHATSAPP_GROUP_SUFFIX = "@g.us"
WHATSAPP_STATUS_BROADCAST = "status@broadcast"
WHATSAPP_MEDIA_TYPES = ("image", "audio", "ptt", "video", "document", "sticker")

# Brazilian mobile numbers may carry an extra leading "9" after the area code
BRAZIL_COUNTRY_PREFIX = "+55"

SOURCE_ID_PREFIX = "WAID:"

# ──────────────────────────────────────────────────────────────────────
# HTTP
# ──────────────────────────────────────────────────────────────────────
DEFAULT_CONTROL_PLANE_TIMEOUT = 30.0
DEFAULT_MEDIA_UPLOAD_TIMEOUT = 60.0
DEFAULT_MAPPING_WRITE_TIMEOUT = 5.0
DEFAULT_USER_AGENT = "wootbridge/0.1"

# ──────────────────────────────────────────────────────────────────────
# Bridge
# ──────────────────────────────────────────────────────────────────────
DEFAULT_MAX_INFLIGHT = 100
DEFAULT_SIGN_DELIMITER = "\n"
DEFAULT_LOCAL_WEBHOOK_BASE = "http://localhost:8080"

# ──────────────────────────────────────────────────────────────────────
# Config
# ──────────────────────────────────────────────────────────────────────
CONFIG_FILENAME = "configs/config.json"
DEFAULT_MAPPING_DB = "~/.wootbridge/mappings.db"
