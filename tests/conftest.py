"""Shared fixtures: an in-memory MPD double, stores and sessions on tmp dirs."""
from typing import Optional

import pytest

from muchas.errors import DaemonConnectionError, NotFoundError
from muchas.models import DaemonSong, DaemonStatus, PlaybackState
from muchas.mpd import ConnectionState
from muchas.session import SessionManager
from muchas.store import ContentStore
from muchas.web.state import Fanout

KB = 1000


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _errors_log(tmp_path, monkeypatch):
    monkeypatch.setattr("muchas.errors.OUTPUT_DIR", tmp_path / "output")
    monkeypatch.setattr("muchas.errors.ERRORS_LOG", tmp_path / "output" / "errors.log")
    return tmp_path / "output" / "errors.log"


class FakeDaemon:
    """MPD queue in memory. Flip `down` to simulate an outage."""

    def __init__(self):
        self.songs: list[DaemonSong] = []
        self.current_id: Optional[int] = None
        self.playback = PlaybackState.STOPPED
        self.elapsed = 0.0
        self.consume = False
        self.down = False
        self.drop_on_enqueue = False
        self.calls: list[tuple] = []
        self._next_id = 1
        self._connected = False

    @property
    def state(self) -> ConnectionState:
        return ConnectionState.CONNECTED if self._connected else ConnectionState.DISCONNECTED

    def _check(self):
        if self.down:
            self._connected = False
            raise DaemonConnectionError("fake MPD is down")
        self._connected = True

    async def connect(self):
        self._check()

    async def close(self):
        self._connected = False

    async def ping(self):
        self._check()

    async def set_consume(self, enabled: bool):
        self.calls.append(("consume", enabled))
        self._check()
        self.consume = enabled

    async def enqueue(self, path: str, position_hint: Optional[int] = None) -> int:
        self.calls.append(("enqueue", path))
        if self.drop_on_enqueue:
            self.down = True
        self._check()
        song = DaemonSong(id=self._next_id, pos=len(self.songs), file=path)
        self._next_id += 1
        if position_hint is None:
            self.songs.append(song)
        else:
            self.songs.insert(position_hint, song)
        return song.id

    async def current_status(self) -> DaemonStatus:
        self._check()
        songs = tuple(
            DaemonSong(id=s.id, pos=i, file=s.file) for i, s in enumerate(self.songs)
        )
        current = next((s for s in songs if s.id == self.current_id), None)
        return DaemonStatus(
            state=self.playback if current else PlaybackState.STOPPED,
            current=current,
            elapsed=self.elapsed if current else None,
            queue=songs,
        )

    async def remove_from_queue(self, daemon_id: int):
        self.calls.append(("remove", daemon_id))
        self._check()
        index = next((i for i, s in enumerate(self.songs) if s.id == daemon_id), None)
        if index is None:
            raise NotFoundError(f"no id {daemon_id}")
        self.songs.pop(index)
        if daemon_id == self.current_id:
            self._advance_to(index)

    async def play(self, position: Optional[int] = None):
        self.calls.append(("play",) if position is None else ("play", position))
        self._check()
        if self.songs:
            if position is not None:
                self.current_id = self.songs[position].id
            elif self.current_id is None:
                self.current_id = self.songs[0].id
            self.playback = PlaybackState.PLAYING

    async def move(self, daemon_id: int, to: int):
        self.calls.append(("move", daemon_id, to))
        self._check()
        index = next((i for i, s in enumerate(self.songs) if s.id == daemon_id), None)
        if index is None:
            raise NotFoundError(f"no id {daemon_id}")
        self.songs.insert(to, self.songs.pop(index))

    def finish_current(self):
        """The current song ends naturally; consume mode also removes it."""
        index = next(i for i, s in enumerate(self.songs) if s.id == self.current_id)
        if self.consume:
            self.songs.pop(index)
            self._advance_to(index)
        else:
            self._advance_to(index + 1)

    def _advance_to(self, index: int):
        if index < len(self.songs):
            self.current_id = self.songs[index].id
        else:
            self.current_id = None
            self.playback = PlaybackState.STOPPED
        self.elapsed = 0.0


async def chunks(data: bytes, size: int = 4096):
    for i in range(0, len(data), size):
        yield data[i:i + size]


def null_prober(path, original_name=None):
    return {"title": None, "artist": None, "album": None, "duration_seconds": None}


@pytest.fixture
def daemon():
    return FakeDaemon()


@pytest.fixture
def store(tmp_path):
    return ContentStore(tmp_path / "uploads", budget=300 * KB, max_file_size=100 * KB)


@pytest.fixture
def fanout():
    return Fanout(queue_size=8)


@pytest.fixture
def session(daemon, store, fanout):
    return SessionManager(daemon, store, fanout, prober=null_prober, poll_interval=0.01)
