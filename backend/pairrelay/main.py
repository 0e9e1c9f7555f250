"""Pair Relay Application.

This is the main entry point for the pair relay service: a WebSocket server
that lets two participants sharing a pair id chat, see each other's presence
and replay recent history when they join.

Modules:
    - relay: pair registry, session protocol and WebSocket endpoint
    - config: YAML settings loader
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from pairrelay.config import AppSettings, get_config
from pairrelay.relay.registry import PairRegistry
from pairrelay.relay.router import router as relay_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    config: AppSettings = app.state.config

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in pairrelay.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    logger.info(
        f"Pair relay ready on ws://{config.server.host}:{config.server.port} "
        f"(history_limit={config.relay.history_limit}, replay_limit={config.relay.replay_limit})"
    )

    yield  # Application runs here

    logger.info(f"Application shutdown complete ({len(app.state.registry)} pairs discarded)")


def create_app(config: Optional[AppSettings] = None) -> FastAPI:
    """Build the FastAPI application with its own pair registry."""
    if config is None:
        config = get_config()

    app = FastAPI(
        title="Pair Relay",
        description="Real-time two-party chat relay with presence and history replay",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.registry = PairRegistry(
        history_limit=config.relay.history_limit,
        replay_limit=config.relay.replay_limit,
    )

    app.include_router(relay_router)

    @app.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        """Plain text banner for load balancers and curious humans."""
        return "Pair relay is running.\n"

    @app.get("/health")
    async def health(request: Request) -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object with the number of live pairs.
        """
        return {"status": "ok", "pairs": len(request.app.state.registry)}

    return app


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    config = get_config()
    uvicorn.run(
        "pairrelay.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level,
    )


if __name__ == "__main__":
    run()
