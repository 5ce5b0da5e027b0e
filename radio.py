"""Muchas Radio — entry point."""
import asyncio
import logging
import sys

import uvicorn
from rich import print as rprint
from rich.logging import RichHandler

from muchas.config import BIND_HOST, DEV_MODE, MPD_HOST, MPD_PORT, UPLOAD_DIR, WEB_PORT
from muchas.preflight import console, run_preflight
from muchas.web.server import create_app


def _setup_logging():
    logging.basicConfig(
        level=logging.DEBUG if DEV_MODE else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


async def main():
    if "--skip-preflight" not in sys.argv:
        ok = await run_preflight()
        if not ok:
            sys.exit(1)

    console.print(
        f"  [bold cyan]♪[/bold cyan]  MPD {MPD_HOST}:{MPD_PORT} · uploads in {UPLOAD_DIR}\n"
        f"  Listening on [bold]http://{BIND_HOST}:{WEB_PORT}[/bold]\n"
    )
    config = uvicorn.Config(
        create_app(),
        host=BIND_HOST,
        port=WEB_PORT,
        log_config=None,
        ws_ping_interval=30,
    )
    await uvicorn.Server(config).serve()


if __name__ == "__main__":
    _setup_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        rprint("\n\n  [bold]Station off the air.[/bold] Goodbye.\n")
        sys.exit(0)
