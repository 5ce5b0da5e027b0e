import asyncio
import json

import pytest

from conftest import KB, chunks, null_prober
from muchas.errors import (
    DaemonConnectionError,
    EnqueueError,
    NotFoundError,
    PlaybackError,
    QuotaExceededError,
    ValidationError,
)
from muchas.models import PlaybackState
from muchas.session import SessionManager
from muchas.store import ContentStore

pytestmark = pytest.mark.anyio


async def upload(session, size, name="song.mp3", user="ana"):
    return await session.handle_upload(user, chunks(b"x" * size), name, size)


def drain(sub):
    messages = []
    while not sub.queue.empty():
        messages.append(json.loads(sub.queue.get_nowait()))
    return messages


def assert_consistent(session):
    """Queue and disk agree on which tracks exist."""
    stored = {f.id for f in session.store.files()}
    queued = session.cache.snapshot().track_ids()
    assert stored == queued
    for track_id in stored:
        assert session.store.path_for(track_id).exists()
    assert session.store.current_usage() <= session.store.budget


async def test_upload_enqueues_starts_playback_and_publishes(session, daemon, fanout):
    sub = fanout.subscribe()
    track = await upload(session, 10 * KB, name="Ana - Song.mp3")

    assert daemon.calls[0] == ("enqueue", track.filename)
    assert ("play", 0) in daemon.calls
    snapshot = session.get_current()
    assert snapshot.state is PlaybackState.PLAYING
    assert snapshot.current.track.id == track.id
    assert session.get_queue() == []

    events = drain(sub)
    assert [e["type"] for e in events] == ["current_track", "queue_update"]
    assert events[0]["data"]["track"]["id"] == track.id
    assert_consistent(session)


async def test_upload_appends_behind_current(session):
    first = await upload(session, 10 * KB)
    second = await upload(session, 10 * KB)
    assert session.get_current().current.track.id == first.id
    assert [(e.position, e.track.id) for e in session.get_queue()] == [(1, second.id)]


async def test_probe_results_land_on_track(daemon, store, fanout):
    def prober(path, original_name=None):
        return {"title": "Tune", "artist": "Band", "album": None, "duration_seconds": 61.5}

    session = SessionManager(daemon, store, fanout, prober=prober)
    track = await upload(session, KB)
    assert (track.title, track.artist, track.album, track.duration) == ("Tune", "Band", None, 61.5)
    assert session.get_current().current.track.title == "Tune"


async def test_probe_crash_is_not_fatal(daemon, store, fanout):
    def prober(path, original_name=None):
        raise RuntimeError("corrupt header")

    session = SessionManager(daemon, store, fanout, prober=prober)
    track = await upload(session, KB)
    assert track.title is None and track.duration is None
    assert store.get(track.id) is not None


@pytest.mark.parametrize("name", ["", "   ", None])
async def test_uploader_name_required(session, store, name):
    with pytest.raises(ValidationError):
        await session.handle_upload(name, chunks(b"x"), "a.mp3", 1)
    assert store.current_usage() == 0


async def test_rejected_format_deletes_file(session, daemon, store):
    async def rejecting(path, position_hint=None):
        raise EnqueueError(f"unsupported format: {path}")

    daemon.enqueue = rejecting
    with pytest.raises(PlaybackError):
        await upload(session, 10 * KB)
    assert store.current_usage() == 0
    assert list(store.directory.iterdir()) == []
    assert session.get_queue() == []


async def test_connection_drop_during_enqueue(session, daemon, store):
    daemon.drop_on_enqueue = True
    with pytest.raises(PlaybackError) as exc:
        await upload(session, 10 * KB)
    assert not isinstance(exc.value, DaemonConnectionError)
    assert isinstance(exc.value.__cause__, DaemonConnectionError)
    assert store.files() == []
    assert list(store.directory.iterdir()) == []

    daemon.down = False
    daemon.drop_on_enqueue = False
    await session.poll_once()
    assert session.get_queue() == []
    assert session.get_current().current is None


async def test_eviction_scenario_280_plus_50(session, daemon, store, fanout):
    oldest = await upload(session, 40 * KB)
    others = [await upload(session, size * KB) for size in (100, 100, 40)]
    assert store.current_usage() == 280 * KB

    sub = fanout.subscribe()
    new = await upload(session, 50 * KB)

    assert store.current_usage() == 290 * KB
    assert store.get(oldest.id) is None
    assert all(store.get(t.id) for t in others)
    assert ("remove", 1) in daemon.calls

    events = drain(sub)
    queue_updates = [e for e in events if e["type"] == "queue_update"]
    assert len(queue_updates) == 2
    removal, addition = queue_updates
    removal_ids = [e["track"]["id"] for e in removal["data"]]
    addition_ids = [e["track"]["id"] for e in addition["data"]]
    assert oldest.id not in removal_ids and new.id not in removal_ids
    assert addition_ids[-1] == new.id
    assert_consistent(session)


async def test_eviction_takes_oldest_never_newer(session, store):
    a = await upload(session, 100 * KB)
    b = await upload(session, 100 * KB)
    c = await upload(session, 100 * KB)
    await upload(session, 100 * KB)
    assert store.get(a.id) is None
    assert store.get(b.id) is not None and store.get(c.id) is not None

    await upload(session, 100 * KB)
    assert store.get(b.id) is None
    assert store.get(c.id) is not None
    assert_consistent(session)


async def test_file_larger_than_budget(daemon, tmp_path, fanout):
    store = ContentStore(tmp_path / "u", budget=50 * KB, max_file_size=100 * KB)
    session = SessionManager(daemon, store, fanout, prober=null_prober)
    with pytest.raises(QuotaExceededError):
        await upload(session, 60 * KB)
    assert daemon.calls == []


async def test_concurrent_uploads_stay_within_budget(session, store, daemon):
    tracks = await asyncio.gather(*(upload(session, 90 * KB, name=f"{i}.mp3") for i in range(7)))

    assert store.current_usage() == 270 * KB
    survivors = sorted(store.files(), key=lambda f: f.track.added_at)
    newest = sorted(tracks, key=lambda t: t.added_at)[-3:]
    assert [f.id for f in survivors] == [t.id for t in newest]
    assert len(daemon.songs) == 3
    assert {s.file for s in daemon.songs} == {f.track.filename for f in survivors}
    assert_consistent(session)


async def test_finished_track_rotates_to_the_end(session, daemon, store, fanout):
    a, b, c = [await upload(session, 10 * KB, name=f"{n}.mp3") for n in "abc"]
    sub = fanout.subscribe()

    daemon.finish_current()
    diff = await session.poll_once()

    assert diff.track_changed and diff.queue_changed
    assert ("move", 1, 2) in daemon.calls
    assert [s.file for s in daemon.songs] == [b.filename, c.filename, a.filename]
    assert store.path_for(a.id).exists()
    assert session.get_current().current.track.id == b.id
    assert [e.track.id for e in session.get_queue()] == [c.id, a.id]
    events = drain(sub)
    assert [e["type"] for e in events] == ["current_track", "queue_update"]
    assert [e["track"]["id"] for e in events[1]["data"]] == [c.id, a.id]
    assert_consistent(session)

    assert not (await session.poll_once()).changed
    assert drain(sub) == []


async def test_finished_track_stays_put_when_storage_full(session, daemon, store):
    a, b, c = [await upload(session, 100 * KB, name=f"{n}.mp3") for n in "abc"]
    assert store.current_usage() == store.budget

    daemon.finish_current()
    await session.poll_once()

    assert not any(call[0] == "move" for call in daemon.calls)
    assert [s.file for s in daemon.songs] == [a.filename, b.filename, c.filename]
    assert session.get_current().current.track.id == b.id
    assert [e.track.id for e in session.get_queue()] == [c.id]
    assert_consistent(session)


async def test_exhausted_queue_restarts_from_the_top(session, daemon, store):
    track = await upload(session, 10 * KB)
    daemon.finish_current()
    assert daemon.current_id is None

    await session.poll_once()

    assert daemon.calls[-1] == ("play", 0)
    snapshot = session.get_current()
    assert snapshot.state is PlaybackState.PLAYING
    assert snapshot.current.track.id == track.id
    assert store.path_for(track.id).exists()


async def test_fresh_uploads_play_before_repeats(session, daemon):
    a = await upload(session, 10 * KB, name="a.mp3")
    b = await upload(session, 10 * KB, name="b.mp3")
    daemon.finish_current()
    await session.poll_once()
    assert [s.file for s in daemon.songs] == [b.filename, a.filename]

    c = await upload(session, 10 * KB, name="c.mp3")
    assert [s.file for s in daemon.songs] == [b.filename, c.filename, a.filename]

    d = await upload(session, 10 * KB, name="d.mp3")
    assert [s.file for s in daemon.songs] == [b.filename, c.filename, d.filename, a.filename]
    assert [e.track.id for e in session.get_queue()] == [c.id, d.id, a.id]


async def test_eviction_after_unpolled_advance_announces_new_track(session, daemon, store, fanout):
    a = await upload(session, 100 * KB, name="a.mp3")
    b = await upload(session, 100 * KB, name="b.mp3")
    await upload(session, 90 * KB, name="c.mp3")
    sub = fanout.subscribe()

    daemon.finish_current()
    new = await upload(session, 50 * KB, name="new.mp3")

    assert store.get(a.id) is None
    events = drain(sub)
    announced = [e["data"]["track"] for e in events if e["type"] == "current_track"]
    assert announced and announced[0]["id"] == b.id
    assert events[-1]["type"] == "queue_update"
    assert [e["track"]["id"] for e in events[-1]["data"]][-1] == new.id
    assert_consistent(session)

    await session.poll_once()
    assert drain(sub) == []


async def test_play_publishes_what_it_refreshed(session, daemon, store, fanout):
    daemon.consume = True
    a = await upload(session, 10 * KB, name="a.mp3")
    b = await upload(session, 10 * KB, name="b.mp3")
    path = store.path_for(a.id)
    sub = fanout.subscribe()

    daemon.finish_current()
    snapshot = await session.play()

    assert snapshot.current.track.id == b.id
    assert store.get(a.id) is None
    assert not path.exists()
    events = drain(sub)
    assert [e["type"] for e in events] == ["current_track", "queue_update"]
    assert events[0]["data"]["track"]["id"] == b.id
    assert events[1]["data"] == []
    assert_consistent(session)

    await session.poll_once()
    assert drain(sub) == []


async def test_poll_restarts_stopped_player(session, daemon):
    await upload(session, 10 * KB)
    daemon.playback = PlaybackState.STOPPED
    daemon.current_id = None
    await session.poll_once()
    assert daemon.calls[-1] == ("play", 0)


async def test_poll_loop_survives_outage(session, daemon, _errors_log):
    daemon.consume = True
    daemon.down = True
    await session.start()
    await asyncio.sleep(0.1)
    assert not session._poll_task.done()
    assert _errors_log.exists()

    daemon.down = False
    for _ in range(200):
        await asyncio.sleep(0.05)
        if session._failures == 0:
            break
    assert session._failures == 0
    assert not daemon.consume
    await session.stop()
    assert session._poll_task.done()


async def test_start_reconciles_disk_and_queue(daemon, store, fanout):
    kept = await store.admit(chunks(b"x" * KB), "kept.mp3", KB, "ana")
    orphan = await store.admit(chunks(b"x" * KB), "orphan.mp3", KB, "ana")
    await daemon.enqueue(kept.filename)
    await daemon.enqueue("f" * 32 + "_bo_gone.mp3")

    daemon.consume = True
    session = SessionManager(daemon, reopen(store), fanout, prober=null_prober)
    await session.start(poll=False)

    assert not daemon.consume
    assert [s.file for s in daemon.songs] == [kept.filename]
    assert session.store.get(orphan.id) is None
    assert not (store.directory / orphan.filename).exists()
    assert_consistent(session)
    await session.stop()


def reopen(store):
    return ContentStore(store.directory, budget=store.budget, max_file_size=store.max_file_size)


async def test_add_to_queue(session, daemon):
    track = await upload(session, 10 * KB)
    with pytest.raises(NotFoundError):
        await session.add_to_queue("nope")
    await session.add_to_queue(track.id)
    assert [s.file for s in daemon.songs] == [track.filename, track.filename]
    assert session.cache.daemon_ids_for(track.id) == [1, 2]


async def test_retract_tolerates_already_removed(session, daemon):
    track = await upload(session, 10 * KB)
    daemon.songs.clear()
    await session._retract(track)
    assert ("remove", 1) in daemon.calls
    assert session.cache.snapshot().queue == ()


async def test_health_reports_usage(session, fanout):
    await upload(session, 10 * KB)
    fanout.subscribe()
    health = session.health()
    assert health["daemon"] == "connected"
    assert health["storage"] == {"used": 10 * KB, "budget": 300 * KB}
    assert health["tracks"] == 1
    assert health["subscribers"] == 1
