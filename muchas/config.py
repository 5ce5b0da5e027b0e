"""Config & constants"""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load .env from project root (one level up from muchas/)
_ROOT = Path(__file__).parent.parent
load_dotenv(_ROOT / ".env")

_MB = 1024 * 1024
_GB = 1024 * _MB


def parse_size(value: str | None, default: int) -> int:
    """Parse "314572800", "300MB" or "1GB" into bytes. Falls back to default."""
    if value is None or not value.strip():
        return default
    val = value.strip().upper()
    try:
        if val.endswith("GB"):
            return int(val[:-2].strip()) * _GB
        if val.endswith("MB"):
            return int(val[:-2].strip()) * _MB
        return int(val)
    except ValueError:
        logger.warning("Invalid size '%s', using default %d", value, default)
        return default


def parse_ports(value: str) -> dict[str, int]:
    """Parse "low=8001,medium=8002" into {"low": 8001, "medium": 8002}."""
    ports = {}
    for pair in value.split(","):
        name, _, port = pair.partition("=")
        if name.strip() and port.strip().isdigit():
            ports[name.strip().lower()] = int(port)
    return ports


# ─── Paths ────────────────────────────────────────────────────────────────────
ROOT_DIR = _ROOT
_upload_dir = Path(os.getenv("UPLOAD_DIR", "uploads"))
UPLOAD_DIR = _upload_dir if _upload_dir.is_absolute() else ROOT_DIR / _upload_dir
OUTPUT_DIR = ROOT_DIR / os.getenv("OUTPUT_DIR", "output")
ERRORS_LOG = OUTPUT_DIR / "errors.log"

# ─── Playback daemon (MPD) ────────────────────────────────────────────────────
MPD_HOST = os.getenv("MPD_HOST", "127.0.0.1")
MPD_PORT = int(os.getenv("MPD_PORT", "6600"))
MPD_TIMEOUT = float(os.getenv("MPD_TIMEOUT", "10"))
# One HTTP output per bitrate variant
MPD_STREAM_PORTS = parse_ports(os.getenv("MPD_STREAM_PORTS", "low=8001,medium=8002,high=8003"))
DEFAULT_QUALITY = os.getenv("DEFAULT_QUALITY", "medium")

# ─── Storage quota ────────────────────────────────────────────────────────────
MAX_TOTAL_STORAGE = parse_size(os.getenv("MAX_TOTAL_STORAGE"), 300 * _MB)
MAX_FILE_SIZE = parse_size(os.getenv("MAX_FILE_SIZE"), 100 * _MB)
ALLOWED_EXTENSIONS = ("mp3", "flac", "ogg", "m4a", "wav")

# ─── Session / fan-out ────────────────────────────────────────────────────────
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "2.0"))
POLL_BACKOFF_MAX = 30.0
SUBSCRIBER_QUEUE_SIZE = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "32"))

# ─── Web server ──────────────────────────────────────────────────────────────
BIND_HOST = os.getenv("BIND_HOST", "127.0.0.1")
WEB_PORT = int(os.getenv("WEB_PORT", "8080"))
MAX_WS_CONNECTIONS = int(os.getenv("MAX_WS_CONNECTIONS", "100"))
MAX_STREAMS_PER_IP = int(os.getenv("MAX_STREAMS_PER_IP", "5"))
_origins = os.getenv("ALLOWED_ORIGINS", "")
ALLOWED_ORIGINS = [o.strip() for o in _origins.split(",") if o.strip()] or ["http://localhost:5173"]

APP_VERSION = "0.3.0"

# ─── Dev mode ─────────────────────────────────────────────────────────────────
DEV_MODE = os.getenv("DEV_MODE", "0").strip() in ("1", "true", "yes")
