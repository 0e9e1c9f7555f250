"""Pair relay: two-party chat rooms with presence and short history replay."""
from .coordinator import SessionCoordinator, SessionState, broadcast
from .registry import PairRegistry

__all__ = ["PairRegistry", "SessionCoordinator", "SessionState", "broadcast"]
