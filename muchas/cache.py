"""Queue/state cache — the in-process mirror of what the daemon is playing.

Readers get the published Snapshot and never wait on the daemon. refresh()
builds a complete new Snapshot before swapping it in, so a reader sees either
the old view or the new one, never a mix.
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .models import DaemonSong, QueueEntry, Snapshot, Track
from .probe import parse_filename

logger = logging.getLogger(__name__)

_FOREIGN_NAME = re.compile(r"^([0-9a-f]{32})_([^_]*)_(.+)$")


@dataclass(frozen=True)
class RefreshDiff:
    track_changed: bool = False
    state_changed: bool = False
    queue_changed: bool = False

    @property
    def changed(self) -> bool:
        return self.track_changed or self.state_changed or self.queue_changed


def _queue_key(snapshot: Snapshot) -> tuple:
    # Upcoming ids too: an advance shortens the upcoming list without touching the queue
    return (
        tuple((e.daemon_id, e.track.id) for e in snapshot.queue),
        tuple(e.daemon_id for e in snapshot.upcoming()),
    )


def _current_key(snapshot: Snapshot) -> tuple:
    if snapshot.current is None:
        return (None, None)
    return (snapshot.current.daemon_id, snapshot.current.track.id)


def diff_snapshots(old: Snapshot, new: Snapshot) -> RefreshDiff:
    return RefreshDiff(
        track_changed=_current_key(old) != _current_key(new),
        state_changed=old.state is not new.state,
        queue_changed=_queue_key(old) != _queue_key(new),
    )


class QueueCache:
    def __init__(self, daemon, store):
        self.daemon = daemon
        self.store = store
        self._snapshot = Snapshot()
        self._refresh_lock = asyncio.Lock()
        # Tracks queued out of band, keyed by daemon file path
        self._foreign: dict[str, Track] = {}

    def snapshot(self) -> Snapshot:
        return self._snapshot

    async def refresh(self) -> RefreshDiff:
        async with self._refresh_lock:
            status = await self.daemon.current_status()
            entries = tuple(
                QueueEntry(position=i, track=self._resolve(song), daemon_id=song.id)
                for i, song in enumerate(status.queue, start=1)
            )
            current = None
            if status.current is not None:
                current = next((e for e in entries if e.daemon_id == status.current.id), None)
                if current is None:
                    # Reported current song missing from the listing: the residual
                    # race between the two requests. Show it, unnumbered.
                    current = QueueEntry(position=0, track=self._resolve(status.current),
                                         daemon_id=status.current.id)
            new = Snapshot(
                state=status.state,
                current=current,
                elapsed=status.elapsed if current else None,
                queue=entries,
            )
            old, self._snapshot = self._snapshot, new
            live_files = {song.file for song in status.queue}
            self._foreign = {f: t for f, t in self._foreign.items() if f in live_files}
            return diff_snapshots(old, new)

    def drop(self, track_id: str) -> Snapshot:
        """Publish a snapshot without track_id (evicted before the next refresh)."""
        old = self._snapshot
        kept = [e for e in old.queue if e.track.id != track_id]
        entries = tuple(
            QueueEntry(position=i, track=e.track, daemon_id=e.daemon_id)
            for i, e in enumerate(kept, start=1)
        )
        current = old.current
        if current is not None:
            if current.track.id == track_id:
                current = None
            else:
                current = next((e for e in entries if e.daemon_id == current.daemon_id), current)
        self._snapshot = Snapshot(
            state=old.state,
            current=current,
            elapsed=old.elapsed if current else None,
            queue=entries,
        )
        return self._snapshot

    def daemon_ids_for(self, track_id: str) -> list[int]:
        return [
            e.daemon_id for e in self._snapshot.queue
            if e.track.id == track_id and e.daemon_id is not None
        ]

    def _resolve(self, song: DaemonSong) -> Track:
        stored = self.store.by_filename(song.file)
        if stored is not None:
            return stored.track
        track = self._foreign.get(song.file)
        if track is None:
            track = _track_from_song(song)
            self._foreign[song.file] = track
        return track


def _track_from_song(song: DaemonSong) -> Track:
    """Describe a queue entry this process did not admit."""
    name = Path(song.file).name
    match = _FOREIGN_NAME.match(name)
    if match:
        track_id, uploader, original = match.groups()
    else:
        track_id, uploader, original = Path(name).stem, "", name
    artist, title = parse_filename(original)
    return Track(
        id=track_id,
        filename=song.file,
        added_by=uploader or "Unknown",
        title=song.title or title,
        artist=song.artist or artist,
        album=song.album,
        duration=song.duration,
    )
