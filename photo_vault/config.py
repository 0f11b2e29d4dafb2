import os
from pathlib import Path

DATA_DIR = Path(
    os.environ.get("PHOTO_VAULT_DIR", Path.home() / ".cache" / "photo-vault")
).resolve()

DB_FILE = DATA_DIR / "vault.db"
BLOBS_DIR = DATA_DIR / "blobs"
TOKENS_FILE = DATA_DIR / "tokens.json"
PINS_FILE = DATA_DIR / "pinned_notes.json"

PHOTOS_TABLE = "photos"
NOTES_TABLE = "notes"

# -- search --

FUZZY_MIN_QUERY_LEN = 3
FUZZY_THRESHOLD = 0.42  # below this, fuzzy matches are noise

SEMANTIC_MIN_SCORE = 0.28
SEMANTIC_MAX_RESULTS = 40
SEMANTIC_DEBOUNCE_SECONDS = 0.3

NOTE_QUERY_PREFIX = "note:"

# -- reconciliation --

POLL_INTERVAL_SECONDS = 4.0
NEW_RECORDS_PAGE_SIZE = 10
REALTIME_RECONNECT_SECONDS = 2.0

# -- captioning --

CAPTION_MODEL = os.environ.get("PHOTO_VAULT_CAPTION_MODEL", "gpt-5.1")
EMBEDDING_MODEL = "text-embedding-3-small"

CONTENT_TYPES = [
    "fashion", "food", "interior", "art", "landscape",
    "screenshot", "people", "object", "meme",
]
VIBE_TAGS = [
    "cozy", "minimal", "brutalist", "retro", "streetwear", "sporty",
    "luxury", "analog", "cinematic", "playful", "serious", "techy",
]

# -- service daemon --

SERVICE_PORT = int(os.environ.get("PHOTO_VAULT_PORT", "7830"))
SERVICE_HOST = "127.0.0.1"
SERVICE_URL = os.environ.get("PHOTO_VAULT_URL", f"http://{SERVICE_HOST}:{SERVICE_PORT}")
PUBLIC_BASE_URL = os.environ.get("PHOTO_VAULT_PUBLIC_URL", SERVICE_URL).rstrip("/")
SERVICE_PID_FILE = Path("/tmp/photo-vault/service.pid")
SERVICE_STARTUP_TIMEOUT = 30  # seconds to wait for health check
REMOTE_FETCH_TIMEOUT = 30

ACCESS_TOKEN = os.environ.get("PHOTO_VAULT_TOKEN", "")
