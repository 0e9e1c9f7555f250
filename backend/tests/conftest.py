"""Shared test fixtures and configuration for backend tests."""
import json

import pytest
from fastapi.testclient import TestClient

from pairrelay.config import AppSettings
from pairrelay.main import create_app
from pairrelay.relay.registry import PairRegistry


class FakeChannel:
    """In-memory Channel that records every payload it is sent."""

    def __init__(self, name: str = "fake") -> None:
        self.name = name
        self.open = True
        self.sent = []

    def is_open(self) -> bool:
        return self.open

    async def send(self, payload: str) -> None:
        self.sent.append(json.loads(payload))

    def of_type(self, event_type: str) -> list:
        return [p for p in self.sent if p["type"] == event_type]

    def __repr__(self) -> str:
        return f"FakeChannel({self.name})"


@pytest.fixture
def registry():
    return PairRegistry()


@pytest.fixture
def make_channel():
    def _make(name: str = "fake") -> FakeChannel:
        return FakeChannel(name)
    return _make


@pytest.fixture
def relay_app():
    """A fresh application (and registry) per test."""
    return create_app(AppSettings())


@pytest.fixture
def api_client(relay_app):
    """Provide a TestClient for a fresh FastAPI app.

    Entered as a context manager so every connection shares one event loop
    and the application lifespan runs.
    """
    with TestClient(relay_app) as client:
        yield client
