"""Per-connection session handling for the pair relay.

Each WebSocket connection gets its own SessionCoordinator. A session starts
UNJOINED, becomes JOINED after a valid hello, and ends CLOSED when the
transport goes away:

    UNJOINED --hello--> JOINED --close--> CLOSED
       |                                    ^
       +---------------close----------------+

Protocol Flow:
    1. Client sends {type: "hello", pairId, userId, displayName?}
       -> joiner receives {type: "welcome", history: [...], users: [...]}
       -> pair receives   {type: "presence", users: [...]}
    2. Client sends {type: "chat", text?, image?, clientMsgId?}
       -> pair receives   {type: "chat", message: {...}}
    3. Connection closes
       -> remaining participants receive {type: "presence", users: [...]}

Protocol violations are answered with {type: "error", message}. Frames that
cannot be parsed are logged and otherwise ignored.
"""
import asyncio
import json
import logging
from enum import Enum
from typing import Optional, Union

from .channel import Channel
from .protocol import (
    ChatEvent,
    HelloEvent,
    InboundEvent,
    MalformedEvent,
    UnknownEvent,
    build_chat_message,
    chat_payload,
    error_payload,
    parse_event,
    presence_payload,
    welcome_payload,
)
from .registry import PairRegistry

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNJOINED = "unjoined"
    JOINED = "joined"
    CLOSED = "closed"


class ProtocolError(Exception):
    """A client event that is not allowed in the current session state."""


async def broadcast(registry: PairRegistry, pair_id: str, payload: dict) -> int:
    """Send one serialised payload to every open channel of a pair.

    Channels are visited in join order and written concurrently. Closed
    channels are skipped; send failures are handled by the channel itself.

    Returns:
        Number of channels the payload was sent to.
    """
    channels = [p.channel for p in registry.participants(pair_id) if p.channel.is_open()]
    if not channels:
        return 0

    data = json.dumps(payload)
    await asyncio.gather(
        *[channel.send(data) for channel in channels],
        return_exceptions=True,
    )
    return len(channels)


class SessionCoordinator:
    """Protocol state machine for a single client connection.

    Attributes:
        registry: Shared pair registry.
        channel: This connection's send handle.
        state: Current session state.
        pair_id: Pair joined, once JOINED.
        user_id: Participant identifier, once JOINED.
    """

    def __init__(self, registry: PairRegistry, channel: Channel) -> None:
        self.registry = registry
        self.channel = channel
        self.state = SessionState.UNJOINED
        self.pair_id: Optional[str] = None
        self.user_id: Optional[str] = None

    async def handle_message(self, raw: Union[str, bytes]) -> None:
        """Parse and dispatch one inbound frame. Never raises."""
        if self.state is SessionState.CLOSED:
            return

        try:
            await self.dispatch(parse_event(raw))
        except ProtocolError as e:
            logger.info(f"[Session] Protocol error from {self._describe()}: {e}")
            await self._reply(error_payload(str(e)))
        except Exception:
            logger.exception(f"[Session] Failed to handle event from {self._describe()}")

    async def dispatch(self, event: InboundEvent) -> None:
        if isinstance(event, MalformedEvent):
            logger.warning(f"[Session] Ignoring malformed payload from {self._describe()}: {event.reason}")
            return

        if isinstance(event, HelloEvent):
            await self.join(event)
            return

        if self.state is not SessionState.JOINED:
            raise ProtocolError("not joined")

        if isinstance(event, ChatEvent):
            await self.chat(event)
        elif isinstance(event, UnknownEvent):
            logger.debug(f"[Session] Ignoring unknown event type {event.type!r} from {self._describe()}")

    async def join(self, event: HelloEvent) -> None:
        """Register this connection in a pair and announce it."""
        if self.state is not SessionState.UNJOINED:
            raise ProtocolError("already joined")
        if not event.pairId or not event.userId:
            raise ProtocolError("pairId and userId are required")

        pair_id, user_id = event.pairId, event.userId
        display_name = event.displayName or user_id

        # Sends stay under the pair lock so presence reaches clients in
        # membership order. Each send is bounded by the channel's timeout.
        async with self.registry.guard(pair_id):
            self.registry.add_participant(pair_id, user_id, display_name, self.channel)
            self.pair_id, self.user_id = pair_id, user_id
            self.state = SessionState.JOINED

            snapshot = self.registry.snapshot(pair_id)
            logger.info(
                f"[Session] {user_id} joined pair {pair_id}: replaying "
                f"{len(snapshot.history)} messages to {len(snapshot.participants)} participants"
            )
            await self._reply(welcome_payload(pair_id, user_id, snapshot.history, snapshot.participants))
            await broadcast(self.registry, pair_id, presence_payload(pair_id, snapshot.participants))

    async def chat(self, event: ChatEvent) -> None:
        """Store a chat message in pair history and fan it out."""
        if event.is_empty:
            logger.debug(f"[Session] Dropping empty chat from {self._describe()}")
            return

        pair_id = self.pair_id
        message = build_chat_message(pair_id, self.user_id, event)

        async with self.registry.guard(pair_id):
            self.registry.get_or_create(pair_id)
            self.registry.append_history(pair_id, message)
            sent = await broadcast(self.registry, pair_id, chat_payload(message))
        logger.debug(f"[Session] Chat {message.id} from {self.user_id} delivered to {sent} channels")

    async def close(self) -> None:
        """Handle transport close. Safe to call more than once."""
        previous, self.state = self.state, SessionState.CLOSED
        if previous is not SessionState.JOINED:
            return

        pair_id = self.pair_id
        async with self.registry.guard(pair_id):
            removed = self.registry.remove_participant(pair_id, self.user_id, channel=self.channel)
            if not removed or pair_id not in self.registry:
                return
            snapshot = self.registry.snapshot(pair_id)
            await broadcast(self.registry, pair_id, presence_payload(pair_id, snapshot.participants))

    async def _reply(self, payload: dict) -> None:
        if self.channel.is_open():
            await self.channel.send(json.dumps(payload))

    def _describe(self) -> str:
        if self.state is SessionState.UNJOINED:
            return "unjoined session"
        return f"{self.user_id}@{self.pair_id}"
