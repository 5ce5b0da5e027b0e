"""Starlette app — HTTP routes + WebSocket + stream proxy + static file serving."""
import asyncio
import contextlib
import logging
from typing import Optional

import httpx
from starlette.applications import Starlette
from starlette.datastructures import UploadFile
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, Response, StreamingResponse
from starlette.routing import Mount, Route, WebSocketRoute
from starlette.staticfiles import StaticFiles
from starlette.websockets import WebSocket, WebSocketDisconnect

from ..config import (
    ALLOWED_ORIGINS,
    APP_VERSION,
    DEFAULT_QUALITY,
    MAX_STREAMS_PER_IP,
    MAX_WS_CONNECTIONS,
    MPD_HOST,
    MPD_STREAM_PORTS,
    ROOT_DIR,
)
from ..errors import RadioError, ValidationError, format_error
from ..models import serialize_event
from ..mpd import MPDClient
from ..session import SessionManager
from ..store import ContentStore
from .state import Fanout

logger = logging.getLogger(__name__)

_UPLOAD_CHUNK = 1024 * 1024
# Policy violation / try again later
_WS_TRY_AGAIN_LATER = 1013

_STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Accept-Ranges": "none",
    "X-Content-Type-Options": "nosniff",
}


class StreamSlots:
    """Concurrent stream connections per client IP."""

    def __init__(self, max_per_ip: int = MAX_STREAMS_PER_IP):
        self.max_per_ip = max_per_ip
        self._counts: dict[str, int] = {}

    def try_acquire(self, ip: str) -> bool:
        if self._counts.get(ip, 0) >= self.max_per_ip:
            return False
        self._counts[ip] = self._counts.get(ip, 0) + 1
        return True

    def release(self, ip: str):
        count = self._counts.get(ip, 0) - 1
        if count > 0:
            self._counts[ip] = count
        else:
            self._counts.pop(ip, None)

    def count(self, ip: str) -> int:
        return self._counts.get(ip, 0)

    @property
    def total(self) -> int:
        return sum(self._counts.values())


def _session(request) -> SessionManager:
    return request.app.state.session


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


# ── Errors ───────────────────────────────────────────────────────────────────

async def radio_error(request, exc: RadioError):
    level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(level, "%s %s → %d: %s", request.method, request.url.path, exc.status_code, exc)
    return JSONResponse({"error": exc.public_message}, status_code=exc.status_code)


# ── Health ───────────────────────────────────────────────────────────────────

async def health(request):
    checks = _session(request).health()
    checks["streams"] = request.app.state.stream_slots.total
    return JSONResponse({
        "status": "ok" if checks["daemon"] == "connected" else "degraded",
        "version": APP_VERSION,
        "checks": checks,
    })


# ── Playback state ───────────────────────────────────────────────────────────

async def current(request):
    return JSONResponse(_session(request).get_current().current_dict())


async def queue(request):
    return JSONResponse([e.to_dict() for e in _session(request).get_queue()])


async def play(request):
    snapshot = await _session(request).play()
    return JSONResponse({"success": True, "state": snapshot.state.value})


async def queue_add(request):
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Body is not JSON", public_message="Expected a JSON body.")
    track_id = body.get("track_id") if isinstance(body, dict) else None
    if not isinstance(track_id, str) or not track_id:
        raise ValidationError("Missing track_id", public_message="track_id is required.")
    track = await _session(request).add_to_queue(track_id)
    return JSONResponse({"success": True, "track_id": track.id})


# ── Upload ───────────────────────────────────────────────────────────────────

async def _iter_upload(upload: UploadFile):
    while True:
        chunk = await upload.read(_UPLOAD_CHUNK)
        if not chunk:
            break
        yield chunk


async def upload(request):
    async with request.form(max_files=1) as form:
        files = [v for v in form.values() if isinstance(v, UploadFile)]
        if not files:
            raise ValidationError("No file part", public_message="No file provided.")
        upload_file = files[0]
        username = request.headers.get("x-username") or form.get("username")
        if not isinstance(username, str):
            username = None
        track = await _session(request).handle_upload(
            username,
            _iter_upload(upload_file),
            upload_file.filename or "",
            upload_file.size,
        )
    return JSONResponse({"success": True, "track_id": track.id, "filename": track.filename})


# ── Audio stream proxy ───────────────────────────────────────────────────────

def _stream_unavailable(message: str) -> JSONResponse:
    return JSONResponse({"error": "Stream unavailable", "message": message}, status_code=503)


async def stream(request):
    """Byte-proxy one of the daemon's HTTP outputs."""
    slots: StreamSlots = request.app.state.stream_slots
    ip = client_ip(request)
    if not slots.try_acquire(ip):
        logger.warning("Stream limit exceeded for %s (%d open)", ip, slots.count(ip))
        return JSONResponse({
            "error": "Too many connections",
            "message": "Close other streams and try again.",
        }, status_code=429)

    snapshot = _session(request).get_current()
    if snapshot.current is None and not snapshot.queue:
        slots.release(ip)
        return JSONResponse({
            "error": "No music in queue",
            "message": "Upload a track to start the station.",
        }, status_code=503)

    quality = request.query_params.get("quality", DEFAULT_QUALITY).lower()
    port = MPD_STREAM_PORTS.get(quality) or MPD_STREAM_PORTS.get(DEFAULT_QUALITY)
    url = f"http://{MPD_HOST}:{port}"

    client: httpx.AsyncClient = request.app.state.http
    try:
        upstream = await client.send(client.build_request("GET", url), stream=True)
    except httpx.HTTPError as e:
        slots.release(ip)
        return _stream_unavailable(format_error("stream", str(e), {"url": url}))

    if upstream.status_code != 200:
        await upstream.aclose()
        slots.release(ip)
        logger.warning("MPD stream at %s answered %d", url, upstream.status_code)
        return _stream_unavailable("The audio stream is not reachable right now.")

    logger.info("Stream opened for %s (%s, %d total)", ip, quality, slots.total)

    async def body():
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            logger.warning("Upstream stream error for %s: %s", ip, e)
        finally:
            await upstream.aclose()
            slots.release(ip)
            logger.info("Stream closed for %s", ip)

    return StreamingResponse(
        body(),
        media_type=upstream.headers.get("content-type", "audio/mpeg"),
        headers=_STREAM_HEADERS,
    )


# ── WebSocket ────────────────────────────────────────────────────────────────

async def websocket_endpoint(websocket: WebSocket):
    session = _session(websocket)
    fanout: Fanout = websocket.app.state.fanout
    if fanout.client_count >= MAX_WS_CONNECTIONS:
        logger.warning("WebSocket limit reached (%d)", fanout.client_count)
        await websocket.close(code=_WS_TRY_AGAIN_LATER)
        return

    await websocket.accept()
    sub = fanout.subscribe()
    logger.info("WS connected: %s (total: %d)", sub.id, fanout.client_count)

    # Two tasks: one drains the client (disconnect detection), one writes from the queue
    async def _reader():
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass

    async def _writer():
        for event in session.snapshot_events():
            await websocket.send_text(serialize_event(event))
        while True:
            message = await sub.get()
            if message is None:
                await websocket.close(code=_WS_TRY_AGAIN_LATER)
                return
            await websocket.send_text(message)

    reader_task = asyncio.create_task(_reader())
    writer_task = asyncio.create_task(_writer())

    try:
        done, pending = await asyncio.wait(
            [reader_task, writer_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.info("WS %s ended: %s", sub.id, task.exception())
    finally:
        fanout.unsubscribe(sub.id)
        logger.info("WS disconnected: %s", sub.id)


# ── SPA fallback ─────────────────────────────────────────────────────────────

async def spa_fallback(request):
    """Serve static files from dist/, fall back to index.html for SPA routing."""
    dist_dir = ROOT_DIR / "web" / "dist"

    path = request.path_params.get("path", "")
    if path:
        file_path = dist_dir / path
        if file_path.is_file() and dist_dir.resolve() in file_path.resolve().parents:
            return FileResponse(file_path)

    index = dist_dir / "index.html"
    if index.exists():
        return FileResponse(index)
    return Response("Frontend not built. Run: cd web && npm run build", status_code=503)


# ── App factory ──────────────────────────────────────────────────────────────

def create_app(session: Optional[SessionManager] = None, start_session: bool = True) -> Starlette:
    if session is None:
        session = SessionManager(MPDClient(), ContentStore(), Fanout())

    @contextlib.asynccontextmanager
    async def lifespan(app):
        app.state.http = httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))
        if start_session:
            await session.start()
            logger.info("Session manager started")
        try:
            yield
        finally:
            if start_session:
                await session.stop()
                logger.info("Session manager stopped")
            await app.state.http.aclose()

    routes = [
        Route("/api/health", health),
        Route("/api/upload", upload, methods=["POST"]),
        Route("/api/current", current),
        Route("/api/queue", queue),
        Route("/api/queue/add", queue_add, methods=["POST"]),
        Route("/api/play", play, methods=["POST"]),
        Route("/api/stream", stream),
        WebSocketRoute("/api/ws", websocket_endpoint),
    ]

    dist_dir = ROOT_DIR / "web" / "dist"
    if dist_dir.exists() and (dist_dir / "assets").exists():
        routes.append(Mount("/assets", app=StaticFiles(directory=str(dist_dir / "assets")), name="assets"))

    # SPA fallback must be last — also handles root
    routes.append(Route("/", spa_fallback))
    routes.append(Route("/{path:path}", spa_fallback))

    app = Starlette(
        routes=routes,
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=ALLOWED_ORIGINS,
                allow_methods=["*"],
                allow_headers=["*"],
            ),
        ],
        exception_handlers={RadioError: radio_error},
        lifespan=lifespan,
    )
    app.state.session = session
    app.state.fanout = session.fanout
    app.state.stream_slots = StreamSlots()
    return app
