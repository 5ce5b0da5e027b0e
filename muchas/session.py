"""Session manager — the only writer of tracks.

Every mutation that touches both the content store and the daemon queue
(admission, eviction, reconcile after a refresh) runs under one upload lock,
so two uploads can't both skip eviction and jointly overrun the budget.
Readers only ever look at the cache's published snapshot.

The station loops: a track that finishes is rotated to the end of the queue
while storage is under budget, and an exhausted queue restarts from the top.
Files leave only through eviction or when they drop out of the daemon queue.

Upload lifecycle: Received → Validated → Persisted → Probed → Enqueued →
Published, or Failed from any step.
"""
import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from .cache import QueueCache, RefreshDiff, diff_snapshots
from .config import POLL_BACKOFF_MAX, POLL_INTERVAL
from .errors import (
    DaemonConnectionError,
    NotFoundError,
    PlaybackError,
    ValidationError,
    format_error,
)
from .models import CurrentTrackEvent, PlaybackState, QueueUpdateEvent, Snapshot, Track
from .probe import empty_probe, probe
from .store import ContentStore
from .web.state import Fanout

logger = logging.getLogger(__name__)


class SessionManager:
    def __init__(
        self,
        daemon,
        store: ContentStore,
        fanout: Fanout,
        cache: Optional[QueueCache] = None,
        prober: Callable[[Path, Optional[str]], dict] = probe,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.daemon = daemon
        self.store = store
        self.fanout = fanout
        self.cache = cache or QueueCache(daemon, store)
        self.prober = prober
        self.poll_interval = poll_interval

        self._upload_lock = asyncio.Lock()
        self._running = False
        self._poll_task: Optional[asyncio.Task] = None
        self._failures = 0
        # What subscribers were last told; every publish diffs against it
        self._published = Snapshot()
        self._last_current_id: Optional[int] = None
        self._played: set[str] = set()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self, poll: bool = True):
        """Index stored files, sync with the daemon, start the poll loop."""
        for track in self.store.load():
            await self._probe_into(track, self.store.get(track.id).original_name)

        try:
            await self.daemon.connect()
            await self.daemon.set_consume(False)
            async with self._upload_lock:
                await self._sync()
        except DaemonConnectionError as e:
            self._failures = 1
            format_error("poll", str(e), {"phase": "startup"})

        self._running = True
        if poll:
            self._poll_task = asyncio.create_task(self.run())

    async def stop(self):
        self._running = False
        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
        await self.daemon.close()

    async def run(self):
        """Background poll loop. Daemon outages back off, never crash the loop."""
        while self._running:
            delay = self.poll_interval
            try:
                if self._failures:
                    await self.daemon.set_consume(False)
                await self.poll_once()
                if self._failures:
                    logger.info("MPD reachable again after %d failed polls", self._failures)
                self._failures = 0
            except DaemonConnectionError as e:
                self._failures += 1
                delay = min(self.poll_interval * 2 ** self._failures, POLL_BACKOFF_MAX)
                if self._failures == 1:
                    format_error("poll", str(e))
                else:
                    logger.warning("MPD still unreachable (%d), next try in %.0fs", self._failures, delay)
            except PlaybackError as e:
                logger.warning("Poll rejected by MPD: %s", e)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Poll cycle error")
            await asyncio.sleep(delay)

    async def poll_once(self) -> RefreshDiff:
        async with self._upload_lock:
            return await self._sync(autoplay=True)

    # ── Reads ────────────────────────────────────────────────────────────────

    def get_current(self) -> Snapshot:
        return self.cache.snapshot()

    def get_queue(self):
        return self.cache.snapshot().upcoming()

    def snapshot_events(self) -> list:
        """What a freshly connected client needs before live events."""
        snapshot = self.cache.snapshot()
        return [CurrentTrackEvent(snapshot), QueueUpdateEvent(tuple(snapshot.upcoming()))]

    def health(self) -> dict:
        return {
            "daemon": self.daemon.state.value,
            "storage": {"used": self.store.current_usage(), "budget": self.store.budget},
            "tracks": len(self.store.files()),
            "subscribers": self.fanout.client_count,
        }

    # ── Mutations ────────────────────────────────────────────────────────────

    async def handle_upload(
        self,
        uploader_name: Optional[str],
        file_stream: AsyncIterator[bytes],
        declared_name: str,
        declared_size: Optional[int],
    ) -> Track:
        uploader = (uploader_name or "").strip()
        if not uploader:
            raise ValidationError("Missing uploader name", public_message="A display name is required.")
        self.store.validate(declared_name, declared_size)

        async with self._upload_lock:
            track = await self.store.admit(file_stream, declared_name, declared_size, uploader)
            enqueued = False
            try:
                await self._make_room(track)
                track = await self._probe_into(track, declared_name)
                try:
                    await self.cache.refresh()
                    await self.daemon.enqueue(track.filename, self._insert_position())
                except DaemonConnectionError as e:
                    raise PlaybackError(
                        str(e), public_message=DaemonConnectionError.public_message,
                    ) from e
                enqueued = True
            finally:
                if not enqueued:
                    logger.info("Upload of %s failed, removing file", track.filename)
                    self.store.delete(track.id)

            logger.info("Queued %s from %s", track.filename, uploader)
            await self._settle()
        return track

    async def add_to_queue(self, track_id: str) -> Track:
        """Queue a stored track again, at the end."""
        async with self._upload_lock:
            stored = self.store.get(track_id)
            if stored is None:
                raise NotFoundError(f"Unknown track {track_id}", public_message="Track not found.")
            await self.daemon.enqueue(stored.track.filename)
            await self._settle()
        return stored.track

    async def play(self) -> Snapshot:
        async with self._upload_lock:
            await self.daemon.play()
            await self._sync()
        return self.cache.snapshot()

    # ── Internals ────────────────────────────────────────────────────────────

    async def _sync(self, autoplay: bool = False) -> RefreshDiff:
        """Refresh, rotate a finished track, reconcile, publish.

        With autoplay, a stopped player with a non-empty queue restarts from
        the top before anything is published. Caller holds the upload lock.
        """
        await self.cache.refresh()
        if await self._rotate_finished():
            await self.cache.refresh()
        await self._reconcile()

        snapshot = self.cache.snapshot()
        if autoplay and snapshot.state is PlaybackState.STOPPED and snapshot.queue:
            logger.info("Player stopped with %d queued, starting from the top", len(snapshot.queue))
            await self.daemon.play(0)
            await self.cache.refresh()
        return self._publish()

    async def _settle(self):
        """Publish after an enqueue and start playback on an idle station."""
        try:
            await self._sync(autoplay=True)
        except (DaemonConnectionError, PlaybackError) as e:
            logger.warning("Refresh after enqueue failed, poll will catch up: %s", e)

    def _publish(self) -> RefreshDiff:
        snapshot = self.cache.snapshot()
        diff = diff_snapshots(self._published, snapshot)
        self._published = snapshot
        if diff.track_changed or diff.state_changed:
            self.fanout.broadcast(CurrentTrackEvent(snapshot))
        if diff.queue_changed:
            self.fanout.broadcast(QueueUpdateEvent(tuple(snapshot.upcoming())))
        return diff

    async def _rotate_finished(self) -> bool:
        """Move the track that just finished to the end of the queue.

        Only while storage is under budget; a full station lets the finished
        track stay where it is. Returns True if the queue was changed.
        """
        snapshot = self.cache.snapshot()
        current_id = snapshot.current.daemon_id if snapshot.current else None
        if snapshot.current is not None:
            self._played.add(snapshot.current.track.id)
        finished, self._last_current_id = self._last_current_id, current_id
        if finished is None or current_id is None or finished == current_id:
            return False

        ids = [e.daemon_id for e in snapshot.queue]
        if finished not in ids or ids.index(finished) == len(ids) - 1:
            return False
        usage, budget = self.store.current_usage(), self.store.budget
        if usage >= budget:
            logger.info("Storage full (%d/%d bytes), finished track stays in place", usage, budget)
            return False
        try:
            await self.daemon.move(finished, len(ids) - 1)
        except NotFoundError:
            return False
        logger.info("Moved finished track %d to the end of the queue", finished)
        return True

    def _insert_position(self) -> Optional[int]:
        """Fresh uploads go after other fresh uploads, ahead of tracks coming round again."""
        snapshot = self.cache.snapshot()
        start = snapshot.current.position if snapshot.current else 0
        for entry in snapshot.queue[start:]:
            if entry.track.id in self._played:
                return entry.position - 1
        return None

    async def _make_room(self, new_track: Track):
        """Evict oldest tracks (never new_track) until usage fits the budget."""
        if self.store.current_usage() <= self.store.budget:
            return
        # Need current daemon ids to retract the victims
        await self.cache.refresh()
        retracted = []

        async def retract(track: Track):
            await self._retract(track)
            retracted.append(track)

        try:
            await self.store.evict_oldest_until_under_budget(0, retract, exclude=(new_track.id,))
        finally:
            if retracted:
                self._publish()

    async def _retract(self, track: Track):
        """Take a track out of the daemon queue and the cache. File deletion follows."""
        for daemon_id in self.cache.daemon_ids_for(track.id):
            try:
                await self.daemon.remove_from_queue(daemon_id)
            except NotFoundError:
                logger.info("Queue id %d for %s already gone", daemon_id, track.id)
        self.cache.drop(track.id)
        self._played.discard(track.id)

    async def _reconcile(self):
        """Align disk with the freshly refreshed queue. Caller holds the upload lock."""
        snapshot = self.cache.snapshot()
        for entry in snapshot.queue:
            if self.store.get(entry.track.id) is None:
                logger.warning("Queue entry %s has no stored file, retracting", entry.track.filename)
                await self._retract(entry.track)

        live = self.cache.snapshot().track_ids()
        for stored in self.store.files():
            if stored.id not in live:
                logger.info("Track %s left the queue, deleting file", stored.track.filename)
                self.store.delete(stored.id)
        self._played &= live

    async def _probe_into(self, track: Track, original_name: Optional[str]) -> Track:
        path = self.store.path_for(track.id)
        try:
            meta = await asyncio.to_thread(self.prober, path, original_name)
        except Exception as e:
            logger.warning("Metadata probe failed for %s: %s", track.filename, e)
            meta = empty_probe()
        return self.store.annotate(
            track.id,
            title=meta.get("title"),
            artist=meta.get("artist"),
            album=meta.get("album"),
            duration=meta.get("duration_seconds"),
        )
