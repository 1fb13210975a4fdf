"""
Relay process entrypoint.

Resolves the configuration profile, initialises logging and serves the FastAPI
relay with uvicorn.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from . import RelayConfig
from .api.server import create_app
from .api.state import RelayState
from .config import relay_config
from .utils.logging import configure_logging, parse_level

LOG = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app) -> AsyncIterator[None]:
    LOG.info("Relay lifespan starting")
    try:
        yield
    finally:
        LOG.info("Relay lifespan shutting down")


async def serve(config: RelayConfig) -> None:
    """
    Run the relay inside an asyncio loop.

    Parameters
    ----------
    config:
        Resolved relay configuration; ``host``/``port`` are the bind address.
    """

    import uvicorn

    relay_state = RelayState()
    app = create_app(state=relay_state, config=config, lifespan=lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=config.host,
        port=config.port,
        log_config=None,
        log_level="info",
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down relay...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    LOG.info("Kamera relay listening on %s:%d (profile=%s)", config.host, config.port, config.profile)
    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Kamera signaling relay")
    parser.add_argument("--profile", default="default", help="configuration profile to load")
    parser.add_argument("--host", default=None, help="bind host (overrides the profile)")
    parser.add_argument("--port", type=int, default=None, help="bind port (overrides the profile)")
    parser.add_argument("--log-level", default="info", help="logging level")
    return parser.parse_args(argv)


def resolve_config(args: argparse.Namespace) -> RelayConfig:
    """Load the selected profile and apply the CLI overrides."""

    config = relay_config(args.profile)
    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    return config


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(level=parse_level(args.log_level))
    config = resolve_config(args)

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        LOG.info("Relay interrupted by user.")


if __name__ == "__main__":
    run()
