"""WebSocket endpoint for the pair relay.

Clients connect to ``/`` (or ``/ws``), send a hello to join a pair and then
exchange chat events. See ``coordinator`` for the full protocol.
"""
import logging

from fastapi import APIRouter, WebSocket

from .channel import WebSocketChannel
from .coordinator import SessionCoordinator
from .registry import PairRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


def get_registry(websocket: WebSocket) -> PairRegistry:
    """The application's shared registry, created in main.create_app()."""
    return websocket.app.state.registry


def get_send_timeout(websocket: WebSocket) -> float:
    return websocket.app.state.config.relay.send_timeout


@router.websocket("/")
@router.websocket("/ws")
async def websocket_relay_endpoint(websocket: WebSocket) -> None:
    """Pump frames from one client connection into its session."""
    await websocket.accept()
    channel = WebSocketChannel(websocket, send_timeout=get_send_timeout(websocket))
    session = SessionCoordinator(get_registry(websocket), channel)
    logger.info(f"[WS] New connection from {websocket.client}")

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            raw = frame.get("text")
            if raw is None:
                raw = frame.get("bytes") or b""
            await session.handle_message(raw)
    finally:
        await session.close()
        logger.info(f"[WS] Connection closed from {websocket.client}")
