"""
Signaling server entrypoint.

Resolves configuration (defaults, optional YAML file, environment, flags),
initialises logging and runs the FastAPI app under uvicorn.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import yaml

from . import ServerConfig
from .api.registry import RoomRegistry
from .api.server import create_app
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


def load_config(path: Optional[str] = None, environ: Optional[dict] = None) -> ServerConfig:
    payload = {}
    if path:
        with Path(path).expanduser().open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle) or {}
        if not isinstance(payload, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")
    return ServerConfig.from_mapping(payload).apply_env(environ)


async def serve(config: ServerConfig) -> None:
    """
    Run the signaling API inside an asyncio loop.
    """

    import uvicorn

    registry = RoomRegistry()

    @asynccontextmanager
    async def app_lifespan(_app) -> AsyncIterator[None]:
        LOG.info("Signaling server starting on %s:%s", config.host, config.port)
        try:
            yield
        finally:
            LOG.info(
                "Signaling server shutting down (%d room(s) open)", len(registry.room_ids())
            )

    app = create_app(config=config, registry=registry, lifespan=app_lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=config.host,
        port=config.port,
        log_config=None,
        log_level=config.log_level.lower(),
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
    parser = argparse.ArgumentParser(description="voiceroom signaling server")
    parser.add_argument("--config", default=None, help="YAML file with server settings")
    parser.add_argument("--host", default=None, help="bind host for the API server")
    parser.add_argument("--port", type=int, default=None, help="bind port for the API server")
    parser.add_argument("--log-level", default=None, help="logging level (INFO, DEBUG, ...)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace, environ: Optional[dict] = None) -> ServerConfig:
    config = load_config(args.config, environ)
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.log_level:
        config.log_level = args.log_level
    config.normalise()
    return config


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    config = build_config(args)
    configure_logging(config.log_level)

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        LOG.info("Server interrupted by user.")


if __name__ == "__main__":
    run()
