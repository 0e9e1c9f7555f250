"""Transport send handles used by the relay.

The relay only needs two things from a connection: whether it is still open
and a best-effort way to push a text frame to it.
"""
import asyncio
import logging
from typing import Optional, Protocol

from fastapi import WebSocket
from fastapi.websockets import WebSocketState

logger = logging.getLogger(__name__)

# Seconds a single frame may take to reach a client before it is dropped
DEFAULT_SEND_TIMEOUT = 5.0


class Channel(Protocol):
    """Send side of a client connection."""

    def is_open(self) -> bool:
        ...

    async def send(self, payload: str) -> None:
        ...


class WebSocketChannel:
    """Channel backed by a Starlette/FastAPI WebSocket.

    Sends are bounded by ``send_timeout`` so a peer that stops reading cannot
    hold its pair's lock indefinitely. ``None`` disables the bound.
    """

    def __init__(self, websocket: WebSocket, send_timeout: Optional[float] = DEFAULT_SEND_TIMEOUT) -> None:
        self.websocket = websocket
        self.send_timeout = send_timeout

    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, payload: str) -> None:
        """Send a text frame, swallowing transport failures and timeouts."""
        try:
            await asyncio.wait_for(self.websocket.send_text(payload), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Send to {self!r} timed out after {self.send_timeout}s, frame dropped")
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")

    def __repr__(self) -> str:
        client = self.websocket.client
        return f"WebSocketChannel({client.host}:{client.port})" if client else "WebSocketChannel()"
