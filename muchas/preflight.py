"""Startup preflight check"""
import asyncio
import tempfile

from rich.console import Console

from .config import APP_VERSION, MPD_HOST, MPD_PORT, MPD_STREAM_PORTS, UPLOAD_DIR
from .errors import DaemonConnectionError, PlaybackError
from .mpd import MPDClient

console = Console()


async def run_preflight() -> bool:
    """
    Run all startup checks. Print results. Return True only if ALL pass.
    """
    console.print(f"\n  [bold]♪  Muchas Radio v{APP_VERSION}[/bold] — preflight check\n")

    checks = [
        ("Python deps", _check_python_deps),
        ("MPD control port", _check_mpd_control),
        ("MPD stream output", _check_mpd_stream),
        ("Upload directory", _check_upload_dir),
    ]

    results = []
    for i, (label, fn) in enumerate(checks, 1):
        ok, msg, fix = await fn()
        results.append((ok, label, msg, fix))
        icon = "[green]✓[/green]" if ok else "[red]✗[/red]"
        dots = "." * max(30 - len(label), 3)
        status = f"[green]{msg}[/green]" if ok else f"[red]{msg}[/red]"
        console.print(f"  [{i}/{len(checks)}] {label} {dots} {icon} {status}")

    failures = [(label, fix) for ok, label, _, fix in results if not ok and fix]
    if failures:
        console.print("")
        for label, fix in failures:
            console.print(f"  [yellow]Fix for {label}:[/yellow]")
            for line in fix.strip().splitlines():
                console.print(f"    {line}")
            console.print("")
        console.print("  Then re-run: [bold]python radio.py[/bold]\n")
        return False

    console.print("")
    return True


async def _check_python_deps() -> tuple[bool, str, str]:
    missing = []
    versions = []
    try:
        import starlette
        versions.append(f"starlette {starlette.__version__}")
    except ImportError:
        missing.append("starlette")

    try:
        import httpx as hx
        versions.append(f"httpx {hx.__version__}")
    except ImportError:
        missing.append("httpx")

    try:
        import mutagen
        versions.append(f"mutagen {mutagen.version_string}")
    except ImportError:
        missing.append("mutagen")

    try:
        import multipart  # noqa: F401
    except ImportError:
        missing.append("python-multipart")

    if missing:
        return False, f"missing: {', '.join(missing)}", "Run: pip install -e ."
    return True, ", ".join(versions), ""


async def _check_mpd_control() -> tuple[bool, str, str]:
    client = MPDClient(MPD_HOST, MPD_PORT, timeout=5)
    try:
        await client.connect()
        await client.ping()
        return True, f"MPD {client.version} at {MPD_HOST}:{MPD_PORT}", ""
    except (DaemonConnectionError, PlaybackError):
        fix = (
            "MPD is not running. Start it with:\n"
            "  mpd mpd.conf\n"
            "Its music_directory must point at the upload directory:\n"
            f"  {UPLOAD_DIR}"
        )
        return False, "not responding", fix
    finally:
        await client.close()


async def _check_mpd_stream() -> tuple[bool, str, str]:
    reachable = []
    for quality, port in sorted(MPD_STREAM_PORTS.items(), key=lambda kv: kv[1]):
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(MPD_HOST, port), 3)
            writer.close()
            reachable.append(quality)
        except (OSError, asyncio.TimeoutError):
            pass
    if reachable:
        return True, f"outputs: {', '.join(reachable)}", ""
    # httpd outputs only listen once playback has opened them; not fatal
    return False, "not listening yet", ""


async def _check_upload_dir() -> tuple[bool, str, str]:
    try:
        UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=UPLOAD_DIR, prefix=".preflight"):
            pass
    except OSError as e:
        return False, "not writable", f"Check permissions on {UPLOAD_DIR}: {e}"
    return True, str(UPLOAD_DIR), ""
