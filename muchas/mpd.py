"""MPD control client — one persistent, self-healing protocol session.

MPD speaks a line-oriented request/response protocol and never pipelines,
so every exchange runs under a single lock: one command in flight at a time.
A broken socket marks the client DISCONNECTED; the next call reconnects once
and raises DaemonConnectionError if that fails. Retrying with backoff is the
caller's job.
"""
import asyncio
import logging
import re
from enum import Enum
from typing import Optional

from .config import MPD_HOST, MPD_PORT, MPD_TIMEOUT
from .errors import DaemonConnectionError, EnqueueError, NotFoundError, PlaybackError
from .models import DaemonSong, DaemonStatus, PlaybackState

logger = logging.getLogger(__name__)

_ACK_RE = re.compile(r"^ACK \[(\d+)@(\d+)\] \{([^}]*)\} ?(.*)$")

# MPD ack codes (src/protocol/Ack.hxx)
ACK_ERROR_NO_EXIST = 50

_UPDATE_POLL_INTERVAL = 0.1


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class AckError(PlaybackError):
    """An ACK line from the daemon."""

    def __init__(self, code: int, command: str, message: str):
        super().__init__(f"ACK {code} {{{command}}} {message}")
        self.code = code
        self.command = command
        self.message = message


def quote(arg) -> str:
    text = str(arg).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def parse_pairs(lines: list[str]) -> list[tuple[str, str]]:
    pairs = []
    for line in lines:
        key, sep, value = line.partition(": ")
        if sep:
            pairs.append((key, value))
    return pairs


def parse_songs(pairs: list[tuple[str, str]]) -> list[DaemonSong]:
    """Split a playlistinfo/currentsong body into songs; each starts at 'file'."""
    songs = []
    current: dict[str, str] = {}
    for key, value in pairs:
        if key == "file" and current:
            songs.append(_to_song(current))
            current = {}
        # First value wins for repeated tags
        current.setdefault(key, value)
    if current:
        songs.append(_to_song(current))
    return songs


def _to_song(fields: dict[str, str]) -> DaemonSong:
    duration = fields.get("duration") or fields.get("Time")
    return DaemonSong(
        id=int(fields.get("Id", -1)),
        pos=int(fields.get("Pos", -1)),
        file=fields.get("file", ""),
        title=fields.get("Title"),
        artist=fields.get("Artist"),
        album=fields.get("Album"),
        duration=float(duration) if duration else None,
    )


class MPDClient:
    def __init__(self, host: str = MPD_HOST, port: int = MPD_PORT, timeout: float = MPD_TIMEOUT):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.version: Optional[str] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    # ── Session ────────────────────────────────────────────────────────────────

    async def connect(self):
        async with self._lock:
            await self._connect()

    async def close(self):
        async with self._lock:
            await self._disconnect()

    async def _connect(self):
        if self.connected:
            return
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), self.timeout,
            )
            greeting = await self._readline()
        except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError) as e:
            await self._disconnect()
            raise DaemonConnectionError(f"MPD unreachable at {self.host}:{self.port}: {e}") from e

        if not greeting.startswith("OK MPD "):
            await self._disconnect()
            raise DaemonConnectionError(f"Unexpected MPD greeting: {greeting[:60]!r}")

        self.version = greeting[len("OK MPD "):]
        self._state = ConnectionState.CONNECTED
        logger.info("Connected to MPD %s at %s:%d", self.version, self.host, self.port)

    async def _disconnect(self):
        was_connected = self.connected
        self._state = ConnectionState.DISCONNECTED
        writer, self._reader, self._writer = self._writer, None, None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
        if was_connected:
            logger.warning("Disconnected from MPD at %s:%d", self.host, self.port)

    async def _readline(self) -> str:
        raw = await asyncio.wait_for(self._reader.readline(), self.timeout)
        if not raw:
            raise asyncio.IncompleteReadError(raw, None)
        return raw.decode("utf-8", errors="replace").rstrip("\n")

    # ── Exchanges ──────────────────────────────────────────────────────────────

    async def _execute(self, *commands: str) -> list[list[str]]:
        """Send one command (or an ok-list batch) and return its body lines.

        A batch returns one group of lines per command.
        """
        async with self._lock:
            await self._connect()
            if len(commands) > 1:
                payload = ["command_list_ok_begin", *commands, "command_list_end"]
            else:
                payload = list(commands)
            try:
                self._writer.write(("\n".join(payload) + "\n").encode("utf-8"))
                await self._writer.drain()
                groups: list[list[str]] = [[]]
                while True:
                    line = await self._readline()
                    if line == "OK":
                        break
                    if line == "list_OK":
                        groups.append([])
                        continue
                    if line.startswith("ACK "):
                        raise _parse_ack(line)
                    groups[-1].append(line)
            except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError) as e:
                await self._disconnect()
                raise DaemonConnectionError(f"MPD I/O failure during {commands[0].split()[0]}: {e}") from e
            except asyncio.CancelledError:
                # The reply may be half read; the next command must not see the rest
                await self._disconnect()
                raise

        if len(commands) > 1 and not groups[-1]:
            groups.pop()
        return groups

    async def _command(self, command: str) -> list[tuple[str, str]]:
        groups = await self._execute(command)
        return parse_pairs(groups[0])

    # ── Public operations ──────────────────────────────────────────────────────

    async def ping(self):
        await self._command("ping")

    async def status(self) -> dict[str, str]:
        return dict(await self._command("status"))

    async def enqueue(self, path: str, position_hint: Optional[int] = None) -> int:
        """Add a file (relative to the music directory) and return its queue id."""
        await self._update_database(path)
        command = f"addid {quote(path)}"
        if position_hint is not None:
            command += f" {int(position_hint)}"
        try:
            pairs = await self._command(command)
        except AckError as e:
            raise EnqueueError(f"MPD refused {path}: {e.message}") from e
        for key, value in pairs:
            if key == "Id":
                return int(value)
        raise EnqueueError(f"MPD returned no id for {path}")

    async def _update_database(self, path: str):
        """Make MPD index a freshly written file before it can be queued."""
        try:
            await self._command(f"update {quote(path)}")
        except AckError as e:
            raise EnqueueError(f"MPD could not index {path}: {e.message}") from e

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        while "updating_db" in await self.status():
            if loop.time() >= deadline:
                logger.warning("MPD database update still running after %.0fs", self.timeout)
                return
            await asyncio.sleep(_UPDATE_POLL_INTERVAL)

    async def current_status(self) -> DaemonStatus:
        """Playback state, current song, elapsed and full queue.

        status+currentsong travel as one batch so they agree with each other;
        the queue listing follows immediately after. A track change landing
        between the two is possible and is corrected on the next refresh.
        """
        status_lines, song_lines = await self._execute("status", "currentsong")
        queue_lines = (await self._execute("playlistinfo"))[0]

        status = dict(parse_pairs(status_lines))
        songs = parse_songs(parse_pairs(song_lines))
        current = songs[0] if songs else None
        elapsed = status.get("elapsed")
        return DaemonStatus(
            state=PlaybackState.from_daemon(status.get("state")),
            current=current,
            elapsed=float(elapsed) if elapsed and current else None,
            queue=tuple(parse_songs(parse_pairs(queue_lines))),
        )

    async def remove_from_queue(self, daemon_id: int):
        try:
            await self._command(f"deleteid {int(daemon_id)}")
        except AckError as e:
            if e.code == ACK_ERROR_NO_EXIST:
                raise NotFoundError(f"Queue id {daemon_id} no longer exists") from e
            raise

    async def play(self, position: Optional[int] = None):
        """Start or resume playback; with a position, start from that queue slot."""
        await self._command("play" if position is None else f"play {int(position)}")

    async def move(self, daemon_id: int, to: int):
        try:
            await self._command(f"moveid {int(daemon_id)} {int(to)}")
        except AckError as e:
            if e.code == ACK_ERROR_NO_EXIST:
                raise NotFoundError(f"Queue id {daemon_id} no longer exists") from e
            raise

    async def set_consume(self, enabled: bool):
        await self._command(f"consume {1 if enabled else 0}")


def _parse_ack(line: str) -> AckError:
    match = _ACK_RE.match(line)
    if not match:
        return AckError(0, "", line)
    code, _index, command, message = match.groups()
    return AckError(int(code), command, message)
