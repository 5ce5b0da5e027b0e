"""Track, queue and playback-state records shared by every layer."""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union


class PlaybackState(str, Enum):
    PLAYING = "playing"
    PAUSED = "paused"
    STOPPED = "stopped"

    @classmethod
    def from_daemon(cls, value: Optional[str]) -> "PlaybackState":
        return {"play": cls.PLAYING, "pause": cls.PAUSED}.get(value or "", cls.STOPPED)


@dataclass(frozen=True)
class Track:
    id: str
    filename: str
    added_by: str
    added_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    duration: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "duration": self.duration,
            "added_by": self.added_by,
            "added_at": self.added_at.isoformat(),
        }


@dataclass(frozen=True)
class QueueEntry:
    position: int
    track: Track
    daemon_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {"position": self.position, "track": self.track.to_dict()}


@dataclass(frozen=True)
class DaemonSong:
    """One queue line as the daemon reports it."""
    id: int
    pos: int
    file: str
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    duration: Optional[float] = None


@dataclass(frozen=True)
class DaemonStatus:
    state: PlaybackState
    current: Optional[DaemonSong]
    elapsed: Optional[float]
    queue: tuple[DaemonSong, ...]


@dataclass(frozen=True)
class Snapshot:
    """Immutable view of the player, published whole by QueueCache."""
    state: PlaybackState = PlaybackState.STOPPED
    current: Optional[QueueEntry] = None
    elapsed: Optional[float] = None
    queue: tuple[QueueEntry, ...] = ()

    def current_dict(self) -> dict:
        return {
            "track": self.current.track.to_dict() if self.current else None,
            "elapsed": self.elapsed if self.current else None,
            "state": self.state.value,
        }

    def upcoming(self) -> list[QueueEntry]:
        """Entries after the current one, renumbered from 1."""
        start = self.current.position if self.current else 0
        return [
            QueueEntry(position=i, track=e.track, daemon_id=e.daemon_id)
            for i, e in enumerate(self.queue[start:], start=1)
        ]

    def track_ids(self) -> set[str]:
        return {e.track.id for e in self.queue}


# ── WebSocket events ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CurrentTrackEvent:
    snapshot: Snapshot
    type: str = "current_track"

    def data(self) -> dict:
        return self.snapshot.current_dict()


@dataclass(frozen=True)
class QueueUpdateEvent:
    queue: tuple[QueueEntry, ...]
    type: str = "queue_update"

    def data(self) -> list:
        return [e.to_dict() for e in self.queue]


Event = Union[CurrentTrackEvent, QueueUpdateEvent]


def serialize_event(event: Event) -> str:
    return json.dumps({"type": event.type, "data": event.data()})
