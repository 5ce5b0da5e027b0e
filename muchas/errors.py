"""Error taxonomy + structured error logging (JSON to errors.log)."""
import json
import logging
import sys
from datetime import datetime
from typing import Optional

from .config import ERRORS_LOG, OUTPUT_DIR, DEV_MODE

logger = logging.getLogger(__name__)


class RadioError(Exception):
    """Base for every failure the HTTP layer knows how to report."""

    status_code = 500
    public_message = "Something went wrong."

    def __init__(self, message: str = "", public_message: Optional[str] = None):
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class ValidationError(RadioError):
    status_code = 400
    public_message = "Invalid upload."


class StorageError(RadioError):
    status_code = 507
    public_message = "Storage is unavailable right now."


class QuotaExceededError(StorageError):
    """The upload can never fit, even with every other track evicted."""

    status_code = 413
    public_message = "File is larger than the station's total storage."


class DaemonConnectionError(RadioError):
    """The playback daemon is unreachable. Retryable."""

    status_code = 503
    public_message = "Playback daemon unavailable, try again shortly."


class PlaybackError(RadioError):
    """The daemon understood the request but refused it."""

    status_code = 502
    public_message = "The player rejected the request."


class EnqueueError(PlaybackError):
    public_message = "The player could not queue this file."


class NotFoundError(RadioError):
    status_code = 404
    public_message = "Not found."


_FRIENDLY_MESSAGES = {
    "poll": "Lost contact with the player, retrying...",
    "stream": "The audio stream is not reachable right now.",
}


def format_error(
    stage: str,
    raw: str = "",
    context: Optional[dict] = None,
) -> str:
    entry = {
        "timestamp": datetime.now().isoformat(),
        "stage": stage,
        "context": context,
        "error": raw,
        "python": sys.version.split()[0],
    }

    _append_to_log(entry)
    logger.error("Error at %s: %s", stage, raw)

    if DEV_MODE:
        return json.dumps(entry, indent=2)
    return _FRIENDLY_MESSAGES.get(stage, f"Something went wrong ({stage}).")


def _append_to_log(entry: dict):
    try:
        OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
        with open(ERRORS_LOG, "a") as f:
            f.write(json.dumps(entry) + "\n")
    except OSError:
        pass
