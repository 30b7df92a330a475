"""
Signaling server entrypoint.

Resolves the configuration profile, initialises logging and serves the
FastAPI application with uvicorn.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from . import SignalingConfig
from .api.server import create_app
from .api.state import HubState
from .utils.logging import configure_logging
from .utils.profiles import ProfileError, load_config

LOG = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(state: HubState) -> AsyncIterator[None]:
    LOG.info("Signaling server starting (profile=%s)", state.config.profile)
    try:
        yield
    finally:
        LOG.info("Signaling server shutting down with %d peer(s) online", len(state.directory))


async def serve(config: SignalingConfig, host: str = "0.0.0.0", port: int = 3001, log_level: str = "info") -> None:
    """
    Run the signaling API inside an asyncio loop.

    Parameters
    ----------
    config:
        Resolved signaling profile.
    host, port:
        Bind address for the FastAPI/uvicorn server.
    """

    import uvicorn

    hub_state = HubState(config=config)

    @asynccontextmanager
    async def app_lifespan(_app) -> AsyncIterator[None]:
        async with lifespan(hub_state):
            yield

    app = create_app(state=hub_state, lifespan=app_lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level=log_level,
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down server...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="PeerLink WebRTC signaling server")
    parser.add_argument("--profile", default="default", help="signaling profile to load")
    parser.add_argument("--host", default="0.0.0.0", help="bind host for the signaling server")
    parser.add_argument("--port", type=int, default=3001, help="bind port for the signaling server")
    parser.add_argument("--log-level", default="info", help="logging level (debug, info, warning)")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        config = load_config(args.profile)
    except ProfileError as exc:
        raise SystemExit(f"error: {exc}") from exc

    try:
        asyncio.run(serve(config=config, host=args.host, port=args.port, log_level=args.log_level.lower()))
    except KeyboardInterrupt:
        LOG.info("Signaling server interrupted by user.")


if __name__ == "__main__":
    run()
