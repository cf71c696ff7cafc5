"""
Shared fixtures for signaling server tests.
"""

import random
from typing import Any, Dict, List

import anyio
import pytest
from starlette.testclient import TestClient

from voice_signaling.admission import AdmissionController
from voice_signaling.broadcaster import StateBroadcaster
from voice_signaling.channel_store import ChannelStore, JsonFileBackend
from voice_signaling.config import Settings
from voice_signaling.connection_hub import ConnectionHub
from voice_signaling.passwords import PasswordHasher
from voice_signaling.presence import PresenceTable
from voice_signaling.relay import SignalRelay
from voice_signaling.server import create_app
from voice_signaling.signaling import SignalingService

# Lowest cost bcrypt accepts; keeps hashing fast in tests
TEST_BCRYPT_ROUNDS = 4


class FakeClient:
    """A registered connection whose outbound events can be inspected."""

    def __init__(self, service: SignalingService, name: str):
        self.name = name
        self.connection, self._outbound = service.hub.open_connection(transport="test")
        service.connect(self.connection)

    @property
    def id(self) -> str:
        return self.connection.id

    def events(self) -> List[Dict[str, Any]]:
        """Drain and return every event queued since the last call."""
        messages = []
        while True:
            try:
                messages.append(self._outbound.receive_nowait())
            except anyio.WouldBlock:
                return messages
            except anyio.EndOfStream:
                return messages

    def event_names(self) -> List[str]:
        return [message["event"] for message in self.events()]


@pytest.fixture
def hasher():
    return PasswordHasher(rounds=TEST_BCRYPT_ROUNDS)


@pytest.fixture
def channels_path(tmp_path):
    return tmp_path / "data" / "channels.json"


@pytest.fixture
def empty_store(channels_path, hasher):
    """A loaded store with no channels."""
    channels_path.parent.mkdir(parents=True, exist_ok=True)
    channels_path.write_text("[]", encoding="utf-8")
    store = ChannelStore(
        JsonFileBackend(str(channels_path)),
        default_capacity=10,
        hasher=hasher,
        rng=random.Random(7),
    )
    store.load()
    return store


@pytest.fixture
def presence():
    return PresenceTable()


@pytest.fixture
def hub():
    return ConnectionHub(buffer_size=64)


@pytest.fixture
def admission(empty_store, presence):
    return AdmissionController(empty_store, presence, default_capacity=10)


@pytest.fixture
def service(empty_store, presence, hub, admission):
    broadcaster = StateBroadcaster(empty_store, presence, hub)
    return SignalingService(hub, presence, admission, SignalRelay(hub, presence), broadcaster)


@pytest.fixture
def make_client(service):
    def _make(name: str = "client") -> FakeClient:
        return FakeClient(service, name)
    return _make


@pytest.fixture
def app_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("BCRYPT_ROUNDS", str(TEST_BCRYPT_ROUNDS))
    monkeypatch.setenv("MAX_ROOM_USERS", "10")
    monkeypatch.delenv("ALLOWED_ORIGINS", raising=False)
    return Settings(channels_file=str(tmp_path / "server" / "channels.json"))


@pytest.fixture
def app(app_settings):
    return create_app(app_settings, rng=random.Random(11))


@pytest.fixture
def client(app):
    return TestClient(app)
