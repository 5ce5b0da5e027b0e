"""Content store — the bounded upload directory behind the queue.

Files are named {track_id}_{uploader}_{original name}, so the directory can be
re-indexed after a restart. Usage is tracked incrementally: it changes in the
same step as the create/unlink it accounts for.
"""
import asyncio
import dataclasses
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional

from .config import ALLOWED_EXTENSIONS, MAX_FILE_SIZE, MAX_TOTAL_STORAGE, UPLOAD_DIR
from .errors import QuotaExceededError, StorageError, ValidationError
from .models import Track

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"(?:[^\w. -]|_)+")
_STORED_NAME = re.compile(r"^([0-9a-f]{32})_([^_]*)_(.+)$")
_MAX_NAME_LEN = 120


def sanitize(name: str, max_len: int = _MAX_NAME_LEN) -> str:
    """Filesystem-safe component: letters in any script, no separators,
    no underscores, no leading dots."""
    clean = _UNSAFE.sub("-", Path(name).name).strip(" -").lstrip(".")
    return clean[:max_len]


def extension_of(name: str) -> str:
    return Path(name).suffix.lower().lstrip(".")


@dataclass(frozen=True)
class StoredFile:
    track: Track
    size: int
    original_name: str

    @property
    def id(self) -> str:
        return self.track.id


class ContentStore:
    def __init__(
        self,
        directory: Path = UPLOAD_DIR,
        budget: int = MAX_TOTAL_STORAGE,
        max_file_size: int = MAX_FILE_SIZE,
        allowed_extensions: Iterable[str] = ALLOWED_EXTENSIONS,
    ):
        self.directory = Path(directory)
        self.budget = budget
        self.max_file_size = max_file_size
        self.allowed_extensions = tuple(allowed_extensions)
        self._files: dict[str, StoredFile] = {}
        self._usage = 0
        self._latest: Optional[datetime] = None

    # ── Index ──────────────────────────────────────────────────────────────────

    def load(self) -> list[Track]:
        """Index files already on disk (e.g. after a restart)."""
        self.directory.mkdir(parents=True, exist_ok=True)
        self._files.clear()
        self._usage = 0
        self._latest = None
        for path in sorted(self.directory.iterdir()):
            if path.name.startswith(".") or not path.is_file():
                continue
            match = _STORED_NAME.match(path.name)
            if not match:
                logger.warning("Ignoring foreign file in upload dir: %s", path.name)
                continue
            track_id, uploader, original = match.groups()
            stat = path.stat()
            track = Track(
                id=track_id,
                filename=path.name,
                added_by=uploader or "Anonymous",
                added_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            )
            self._add(StoredFile(track=track, size=stat.st_size, original_name=original))
        logger.info("Indexed %d stored tracks (%d bytes)", len(self._files), self._usage)
        return [f.track for f in self.files()]

    def _add(self, stored: StoredFile):
        self._files[stored.id] = stored
        self._usage += stored.size
        if self._latest is None or stored.track.added_at > self._latest:
            self._latest = stored.track.added_at

    def _next_timestamp(self) -> datetime:
        """Admission times strictly increase, so later uploads always sort later."""
        now = datetime.now(timezone.utc)
        if self._latest is not None and now <= self._latest:
            now = self._latest + timedelta(microseconds=1)
        return now

    def current_usage(self) -> int:
        return self._usage

    def get(self, track_id: str) -> Optional[StoredFile]:
        return self._files.get(track_id)

    def by_filename(self, filename: str) -> Optional[StoredFile]:
        match = _STORED_NAME.match(Path(filename).name)
        stored = self._files.get(match.group(1)) if match else None
        if stored and stored.track.filename == Path(filename).name:
            return stored
        return None

    def files(self) -> list[StoredFile]:
        """Oldest first; equal timestamps ordered by id."""
        return sorted(self._files.values(), key=lambda f: (f.track.added_at, f.id))

    def path_for(self, track_id: str) -> Path:
        return self.directory / self._files[track_id].track.filename

    def annotate(self, track_id: str, **metadata) -> Track:
        """Replace a stored track's metadata fields; returns the new Track."""
        stored = self._files[track_id]
        track = dataclasses.replace(stored.track, **metadata)
        self._files[track_id] = dataclasses.replace(stored, track=track)
        return track

    # ── Admission ──────────────────────────────────────────────────────────────

    def validate(self, declared_filename: str, declared_size: Optional[int]):
        ext = extension_of(declared_filename or "")
        if ext not in self.allowed_extensions:
            raise ValidationError(
                f"Rejected extension {ext!r}",
                public_message=f"Invalid file type. Supported formats: {', '.join(self.allowed_extensions)}",
            )
        if declared_size is not None:
            if declared_size > self.budget:
                raise QuotaExceededError(f"{declared_size} bytes exceeds total budget {self.budget}")
            if declared_size > self.max_file_size:
                raise ValidationError(
                    f"Declared size {declared_size} over cap",
                    public_message=f"File too large (max {self.max_file_size // (1024 * 1024)}MB)",
                )

    async def admit(
        self,
        stream: AsyncIterator[bytes],
        declared_filename: str,
        declared_size: Optional[int],
        uploader: str = "Anonymous",
    ) -> Track:
        """Validate, then copy the stream to a fresh file. Partial files never survive."""
        self.validate(declared_filename, declared_size)
        self.directory.mkdir(parents=True, exist_ok=True)

        track_id = uuid.uuid4().hex
        ext = extension_of(declared_filename)
        # The suffix is what MPD picks a decoder by, so it always survives
        stem = sanitize(Path(declared_filename).name[: -(len(ext) + 1)])
        original = f"{stem or 'upload'}.{ext}"
        filename = f"{track_id}_{sanitize(uploader, 40)}_{original}"
        path = self.directory / filename
        cap = min(self.max_file_size, self.budget)

        written = 0
        complete = False
        try:
            fh = open(path, "xb")
        except OSError as e:
            raise StorageError(f"Cannot create {path}: {e}") from e
        try:
            async for chunk in stream:
                written += len(chunk)
                if written > cap:
                    raise ValidationError(
                        f"Upload exceeded {cap} bytes mid-stream",
                        public_message=f"File too large (max {cap // (1024 * 1024)}MB)",
                    )
                await asyncio.to_thread(fh.write, chunk)
            complete = True
        except OSError as e:
            raise StorageError(f"Write failed for {filename}: {e}") from e
        finally:
            fh.close()
            if not complete:
                path.unlink(missing_ok=True)
                logger.info("Discarded partial upload %s (%d bytes)", filename, written)

        if written == 0:
            path.unlink(missing_ok=True)
            raise ValidationError("Empty upload", public_message="Uploaded file is empty.")

        track = Track(id=track_id, filename=filename, added_by=uploader, added_at=self._next_timestamp())
        self._add(StoredFile(track=track, size=written, original_name=declared_filename))
        logger.info("Admitted %s (%d bytes, usage %d/%d)", filename, written, self._usage, self.budget)
        return track

    # ── Removal ────────────────────────────────────────────────────────────────

    def delete(self, track_id: str) -> Optional[Track]:
        stored = self._files.pop(track_id, None)
        if stored is None:
            return None
        self._usage -= stored.size
        try:
            (self.directory / stored.track.filename).unlink(missing_ok=True)
        except OSError as e:
            logger.error("Failed to delete %s: %s", stored.track.filename, e)
        logger.info("Deleted %s (usage %d/%d)", stored.track.filename, self._usage, self.budget)
        return stored.track

    async def evict_oldest_until_under_budget(
        self,
        reserve_bytes: int,
        on_evict: Callable[[Track], Awaitable[None]],
        exclude: Iterable[str] = (),
    ) -> list[Track]:
        """Delete oldest tracks until usage + reserve fits the budget.

        on_evict runs (and must succeed) before each file is deleted, so the
        caller can retract the track from the daemon and the cache first.
        """
        if reserve_bytes > self.budget:
            raise QuotaExceededError(f"Reserve {reserve_bytes} exceeds budget {self.budget}")
        skip = set(exclude)
        evicted = []
        while self._usage + reserve_bytes > self.budget:
            candidates = [f for f in self.files() if f.id not in skip]
            if not candidates:
                raise QuotaExceededError(
                    f"Cannot free space: usage {self._usage}, reserve {reserve_bytes}, budget {self.budget}"
                )
            victim = candidates[0]
            logger.info("Evicting %s (%d bytes) to fit budget", victim.track.filename, victim.size)
            await on_evict(victim.track)
            self.delete(victim.id)
            evicted.append(victim.track)
        return evicted
