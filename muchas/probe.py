"""Metadata prober — tags via mutagen, filename fallback. Never raises."""
import logging
import re
from pathlib import Path
from typing import Optional

from mutagen import File as MutagenFile
from mutagen import MutagenError

logger = logging.getLogger(__name__)

_LEADING_TRACK_NO = re.compile(r"^[\d.\s]+")


def empty_probe() -> dict:
    return {"title": None, "artist": None, "album": None, "duration_seconds": None}


def parse_filename(name: str) -> tuple[Optional[str], Optional[str]]:
    """"01. Artist - Title.mp3" → ("Artist", "Title"). No dash → (None, stem)."""
    stem = Path(name).stem
    if " - " in stem:
        artist, title = stem.split(" - ", 1)
        artist = _LEADING_TRACK_NO.sub("", artist).strip()
        title = title.strip()
        return artist or None, title or None
    title = _LEADING_TRACK_NO.sub("", stem).strip()
    return None, title or None


def _first(tags, key: str) -> Optional[str]:
    values = tags.get(key) if tags else None
    if not values:
        return None
    value = str(values[0]).strip()
    return value or None


def probe(file_path: Path, original_name: Optional[str] = None) -> dict:
    """Return {title, artist, album, duration_seconds}; unknown fields are None."""
    result = empty_probe()
    try:
        audio = MutagenFile(file_path, easy=True)
    except (MutagenError, OSError, ValueError) as e:
        logger.info("No readable tags in %s: %s", file_path.name, e)
        audio = None

    if audio is not None:
        result["title"] = _first(audio.tags, "title")
        result["artist"] = _first(audio.tags, "artist")
        result["album"] = _first(audio.tags, "album")
        length = getattr(audio.info, "length", None)
        if length:
            result["duration_seconds"] = round(float(length), 2)

    if original_name and (result["title"] is None or result["artist"] is None):
        artist, title = parse_filename(original_name)
        result["artist"] = result["artist"] or artist
        result["title"] = result["title"] or title

    return result
