"""Wire protocol for the pair relay WebSocket.

Inbound frames are parsed once at the connection boundary into one of four
event variants:

    - HelloEvent:     {type: "hello", pairId, userId, displayName?}
    - ChatEvent:      {type: "chat", text?, image?, clientMsgId?}
    - UnknownEvent:   a JSON object whose ``type`` is not recognised
    - MalformedEvent: anything that is not a JSON object of the right shape

Outbound payloads are plain dicts built by the ``*_payload`` helpers so the
coordinator can serialise them once per broadcast.
"""
import json
import random
import time
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

# Media prefix a chat image must carry to be accepted
IMAGE_PREFIX = "data:image"

# Text stored for messages that carry only an image
IMAGE_PLACEHOLDER = "[image]"


def _as_text(value: Any) -> str:
    """Coerce a loosely typed JSON scalar into a string.

    Falsy scalars (null, "", 0, false) read as "". Other scalars render the way
    JavaScript clients write them: true -> "true", 2.0 -> "2".
    """
    if isinstance(value, (dict, list)):
        raise ValueError("expected a scalar value")
    if not value:
        return ""
    if value is True:
        return "true"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# =============================================================================
# Inbound events
# =============================================================================


class HelloEvent(BaseModel):
    """Join request. Identifiers are trimmed; empty means missing."""
    type: str = "hello"
    pairId: str = ""
    userId: str = ""
    displayName: str = ""

    @field_validator("pairId", "userId", "displayName", mode="before")
    @classmethod
    def _trimmed(cls, value: Any) -> str:
        return _as_text(value).strip()


class ChatEvent(BaseModel):
    """Chat send request from a joined participant."""
    type: str = "chat"
    text: str = ""
    image: Optional[Any] = None
    clientMsgId: Optional[str] = None

    @field_validator("text", mode="before")
    @classmethod
    def _trimmed(cls, value: Any) -> str:
        return _as_text(value).strip()

    @field_validator("clientMsgId", mode="before")
    @classmethod
    def _message_id(cls, value: Any) -> Optional[str]:
        return _as_text(value) or None

    @property
    def image_data(self) -> Optional[str]:
        """The embedded image, if it is a well-formed data URL."""
        if isinstance(self.image, str) and self.image.startswith(IMAGE_PREFIX):
            return self.image
        return None

    @property
    def is_empty(self) -> bool:
        return not self.text and self.image_data is None


class UnknownEvent(BaseModel):
    type: str


class MalformedEvent(BaseModel):
    raw: str
    reason: str


InboundEvent = Union[HelloEvent, ChatEvent, UnknownEvent, MalformedEvent]

_EVENT_TYPES = {
    "hello": HelloEvent,
    "chat": ChatEvent,
}


def parse_event(raw: Union[str, bytes]) -> InboundEvent:
    """Parse a raw frame into an inbound event variant. Never raises."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    try:
        data = json.loads(raw)
    except (ValueError, RecursionError) as e:
        # ValueError covers JSONDecodeError and oversized integer literals
        return MalformedEvent(raw=raw[:200], reason=f"invalid JSON: {e}")

    if not isinstance(data, dict):
        return MalformedEvent(raw=raw[:200], reason="payload is not a JSON object")

    event_type = data.get("type")
    model = _EVENT_TYPES.get(event_type) if isinstance(event_type, str) else None
    if model is None:
        return UnknownEvent(type="" if event_type is None else str(event_type))

    try:
        return model.model_validate(data)
    except ValidationError as e:
        return MalformedEvent(raw=raw[:200], reason=f"invalid {event_type} event: {e.error_count()} error(s)")


# =============================================================================
# Outbound messages
# =============================================================================


class ParticipantInfo(BaseModel):
    """Presence entry as sent to clients."""
    userId: str
    displayName: str


class ChatMessage(BaseModel):
    """A chat message as stored in pair history and broadcast to clients."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    type: str = "chat"
    pairId: str
    sender: str = Field(..., alias="from")
    text: str
    time: str
    image: Optional[str] = None

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def generate_message_id() -> str:
    """Timestamp plus random suffix. Collisions are possible, not harmful."""
    return f"{int(time.time() * 1000)}_{random.randrange(1000)}"


def utc_timestamp() -> str:
    """Current UTC time in ISO-8601 with millisecond precision and a Z suffix."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_chat_message(pair_id: str, sender: str, event: ChatEvent) -> ChatMessage:
    """Turn an accepted chat event into the message stored in history."""
    image = event.image_data
    return ChatMessage(
        id=event.clientMsgId or generate_message_id(),
        pairId=pair_id,
        sender=sender,
        text=event.text or IMAGE_PLACEHOLDER,
        time=utc_timestamp(),
        image=image,
    )


def welcome_payload(
    pair_id: str,
    user_id: str,
    history: List[ChatMessage],
    users: List[ParticipantInfo],
) -> dict:
    return {
        "type": "welcome",
        "pairId": pair_id,
        "userId": user_id,
        "history": [msg.to_wire() for msg in history],
        "users": [u.model_dump() for u in users],
    }


def presence_payload(pair_id: str, users: List[ParticipantInfo]) -> dict:
    return {
        "type": "presence",
        "pairId": pair_id,
        "users": [u.model_dump() for u in users],
    }


def chat_payload(message: ChatMessage) -> dict:
    return {"type": "chat", "message": message.to_wire()}


def error_payload(message: str) -> dict:
    return {"type": "error", "message": message}
