"""In-memory registry of pairs, their participants and recent history.

A pair is created lazily by the first join and lives as long as it has either
a connected participant or at least one message in history. A pair whose last
participant leaves but which still holds history is kept so a later joiner can
replay it.

Thread Safety:
    Registry methods are synchronous and never await, so on a single event
    loop each call is atomic. Multi-step sequences (mutate, snapshot, then
    broadcast) must run inside ``guard(pair_id)``, which serialises them per
    pair without blocking other pairs.
"""
import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from .channel import Channel
from .protocol import ChatMessage, ParticipantInfo

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Maximum number of messages retained per pair
DEFAULT_HISTORY_LIMIT = 500

# Maximum number of messages replayed to a joining participant
DEFAULT_REPLAY_LIMIT = 100


# =============================================================================
# Data Models
# =============================================================================


@dataclass
class Participant:
    """One connected identity within a pair.

    Attributes:
        identifier: Client-chosen user id, unique within the pair.
        display_name: Name shown in presence lists.
        channel: Send handle for the participant's connection. Not owned;
            the registry never closes it.
    """
    identifier: str
    display_name: str
    channel: Channel

    def info(self) -> ParticipantInfo:
        return ParticipantInfo(userId=self.identifier, displayName=self.display_name)


@dataclass
class PairState:
    """Participants and bounded history for one pair."""
    history_limit: int = DEFAULT_HISTORY_LIMIT
    participants: Dict[str, Participant] = field(default_factory=dict)
    history: Deque[ChatMessage] = field(init=False, default_factory=deque)

    def __post_init__(self) -> None:
        self.history = deque(maxlen=self.history_limit)

    def is_empty(self) -> bool:
        return not self.participants and not self.history


class PairSnapshot(BaseModel):
    """Read-only view used to build welcome and presence payloads."""
    participants: List[ParticipantInfo] = Field(default_factory=list)
    history: List[ChatMessage] = Field(default_factory=list)


# =============================================================================
# Keyed locking
# =============================================================================


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# =============================================================================
# Pair Registry
# =============================================================================


class PairRegistry:
    """Owns every pair's state. Knows nothing about broadcasting.

    One instance is created per application and injected into each
    connection's SessionCoordinator.
    """

    def __init__(
        self,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        replay_limit: int = DEFAULT_REPLAY_LIMIT,
    ) -> None:
        if history_limit < 1 or replay_limit < 1:
            raise ValueError("history_limit and replay_limit must be positive")
        self.history_limit = history_limit
        self.replay_limit = min(replay_limit, history_limit)

        # pair_id -> PairState
        self.pairs: Dict[str, PairState] = {}

        self._locks = KeyedLock()

    def guard(self, pair_id: str):
        """Async context manager serialising multi-step work on one pair."""
        return self._locks.hold(pair_id)

    def get(self, pair_id: str) -> Optional[PairState]:
        return self.pairs.get(pair_id)

    def get_or_create(self, pair_id: str) -> PairState:
        """Return the pair's state, creating an empty one on first use."""
        pair = self.pairs.get(pair_id)
        if pair is None:
            pair = self.pairs[pair_id] = PairState(history_limit=self.history_limit)
            logger.info(f"[Registry] Created pair {pair_id}")
        return pair

    def add_participant(
        self,
        pair_id: str,
        identifier: str,
        display_name: str,
        channel: Channel,
    ) -> Participant:
        """Insert or replace a participant.

        Re-joining with an existing identifier swaps in the new channel and
        display name while keeping the participant's position in presence
        lists, so a reconnect never shows up twice.
        """
        pair = self.get_or_create(pair_id)
        existing = pair.participants.get(identifier)
        participant = Participant(identifier, display_name, channel)
        pair.participants[identifier] = participant
        if existing is not None:
            logger.info(f"[Registry] {identifier} reconnected to pair {pair_id}")
        else:
            logger.info(
                f"[Registry] {identifier} joined pair {pair_id} "
                f"({len(pair.participants)} participants)"
            )
        return participant

    def remove_participant(
        self,
        pair_id: str,
        identifier: str,
        channel: Optional[Channel] = None,
    ) -> bool:
        """Remove a participant; no-op for unknown pairs or identifiers.

        Args:
            pair_id: Pair to remove from.
            identifier: Participant to remove.
            channel: When given, only remove the entry if it is still bound
                to this channel (a newer connection may have replaced it).

        Returns:
            True if a participant was removed.
        """
        pair = self.pairs.get(pair_id)
        if pair is None:
            return False

        participant = pair.participants.get(identifier)
        if participant is None:
            return False
        if channel is not None and participant.channel is not channel:
            logger.debug(f"[Registry] Ignoring stale leave for {identifier} in pair {pair_id}")
            return False

        del pair.participants[identifier]
        logger.info(f"[Registry] {identifier} left pair {pair_id}")

        if pair.is_empty():
            del self.pairs[pair_id]
            logger.info(f"[Registry] Removed empty pair {pair_id}")
        return True

    def append_history(self, pair_id: str, message: ChatMessage) -> None:
        """Append a message, dropping the oldest beyond the history limit."""
        pair = self.pairs.get(pair_id)
        if pair is None:
            logger.warning(f"[Registry] append_history on unknown pair {pair_id}")
            return
        pair.history.append(message)

    def participants(self, pair_id: str) -> List[Participant]:
        """Current participants of a pair in join order."""
        pair = self.pairs.get(pair_id)
        return list(pair.participants.values()) if pair else []

    def snapshot(self, pair_id: str) -> PairSnapshot:
        """Participant list plus the most recent replay_limit messages."""
        pair = self.pairs.get(pair_id)
        if pair is None:
            return PairSnapshot()

        history = list(pair.history)[-self.replay_limit:]
        return PairSnapshot(
            participants=[p.info() for p in pair.participants.values()],
            history=history,
        )

    def __contains__(self, pair_id: object) -> bool:
        return pair_id in self.pairs

    def __len__(self) -> int:
        return len(self.pairs)
