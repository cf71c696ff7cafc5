"""
Tests for the channel REST API and the health endpoint.

Tests cover:
- Listing and reading channels
- Creating channels (ids, defaults, NAME_REQUIRED)
- Partial updates and passphrase removal
- Content-Type, JSON and validation errors
- Non-UTF-8 bodies with an explicit charset
- Storage failures
"""

import json
import random

import anyio
import pytest
from starlette.testclient import TestClient

from voice_signaling.channel_store import ChannelStoreWriteError, JsonFileBackend
from voice_signaling.config import Settings
from voice_signaling.server import create_app


class FailingBackend(JsonFileBackend):
    def save(self, records):
        raise ChannelStoreWriteError("disk full")


def _ids(client):
    return [channel["id"] for channel in client.get("/api/channels").json()]


class TestListChannels:

    def test_seeded_channels(self, client):
        response = client.get("/api/channels")
        assert response.status_code == 200
        channels = response.json()
        assert [c["id"] for c in channels] == ["general", "coop", "squad"]
        assert channels[0] == {
            "id": "general",
            "name": "Общий",
            "capacity": 10,
            "hasPassword": False,
            "onlineCount": 0,
            "onlineUsers": [],
        }

    def test_get_one(self, client):
        response = client.get("/api/channels/coop")
        assert response.status_code == 200
        assert response.json()["name"] == "Игры"

    def test_get_unknown(self, client):
        response = client.get("/api/channels/nope")
        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "CHANNEL_NOT_FOUND"
        assert "Channel 'nope' not found" in body["error"]


class TestCreateChannel:

    def test_create(self, client):
        response = client.post("/api/channels", json={"name": "Team Talk", "maxUsers": 4})
        assert response.status_code == 201
        body = response.json()
        assert body["id"] == "team-talk"
        assert body["name"] == "Team Talk"
        assert body["capacity"] == 4
        assert body["onlineCount"] == 0
        assert _ids(client)[-1] == "team-talk"

    def test_defaults(self, client):
        body = client.post("/api/channels", json={"name": "Lobby", "maxUsers": 0}).json()
        assert body["capacity"] == 10
        assert body["hasPassword"] is False

    def test_legacy_capacity_field(self, client):
        assert client.post("/api/channels", json={"name": "Lobby", "capacity": 3}).json()["capacity"] == 3

    def test_colliding_name_gets_new_id(self, client):
        body = client.post("/api/channels", json={"name": "General"}).json()
        assert body["id"].startswith("general-")
        assert _ids(client).count("general") == 1

    def test_password_is_not_exposed(self, client, app_settings):
        response = client.post("/api/channels", json={"name": "Private", "password": "secret"})
        assert response.status_code == 201
        assert response.json()["hasPassword"] is True
        assert "secret" not in response.text
        assert "passwordHash" not in client.get("/api/channels/private").text
        with open(app_settings.channels_file, encoding="utf-8") as f:
            assert '"secret"' not in f.read()

    @pytest.mark.parametrize("body", [{"name": "   "}, {"name": ""}, {}])
    def test_name_required(self, client, body):
        response = client.post("/api/channels", json=body)
        assert response.status_code == 400
        assert response.json()["code"] == "NAME_REQUIRED"
        assert _ids(client) == ["general", "coop", "squad"]

    def test_unsupported_media_type(self, client):
        response = client.post(
            "/api/channels", content=b'{"name": "x"}', headers={"Content-Type": "text/plain"}
        )
        assert response.status_code == 415
        assert response.json()["code"] == "UNSUPPORTED_MEDIA_TYPE"

    @pytest.mark.parametrize("content", [b"{bad", b"", b"[1, 2]"])
    def test_invalid_json(self, client, content):
        response = client.post(
            "/api/channels", content=content, headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_JSON"

    def test_validation_error(self, client):
        response = client.post("/api/channels", json={"name": "X", "maxUsers": "abc"})
        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["error"].startswith("Ошибка валидации параметров")
        assert len(_ids(client)) == 3

    def test_explicit_cp1251_charset(self, client):
        response = client.post(
            "/api/channels",
            content=json.dumps({"name": "Общий чат"}, ensure_ascii=False).encode("cp1251"),
            headers={"Content-Type": "application/json; charset=windows-1251"},
        )
        assert response.status_code == 201
        assert response.json()["id"] == "общий-чат"
        assert response.json()["name"] == "Общий чат"

    def test_cp1251_detected_without_charset(self, client):
        name = "Голосовой канал для вечерних встреч команды"
        response = client.post(
            "/api/channels",
            content=json.dumps({"name": name}, ensure_ascii=False).encode("cp1251"),
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 201

    def test_created_password_verifies(self, app, client):
        client.post("/api/channels", json={"name": "Private", "password": "secret"})
        store = app.state.store
        channel = store.get("private")
        assert store.hasher.is_hash(channel.password_hash)
        assert store.verify_password(channel, "secret") is True

    def test_declared_charset_that_does_not_fit(self, client):
        response = client.post(
            "/api/channels",
            content="{\"name\": \"Общий\"}".encode("utf-8"),
            headers={"Content-Type": "application/json; charset=ascii"},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_ENCODING"

    def test_non_utf8_rejected_when_detection_disabled(self, app, client):
        app.state.settings.enable_encoding_auto_detection = False
        response = client.post(
            "/api/channels",
            content="{\"name\": \"Общий\"}".encode("cp1251"),
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_ENCODING"

    def test_storage_failure(self, app, client):
        app.state.store.backend = FailingBackend(app.state.store.backend.path)
        response = client.post("/api/channels", json={"name": "Lost"})
        assert response.status_code == 500
        assert response.json()["code"] == "INTERNAL_ERROR"
        assert "lost" not in _ids(client)

    def test_created_channel_is_broadcast(self, app, client):
        service = app.state.service
        connection, outbound = service.hub.open_connection(transport="test")
        service.connect(connection)
        outbound.receive_nowait()

        client.post("/api/channels", json={"name": "Team Talk"})

        message = outbound.receive_nowait()
        assert message["event"] == "channels-state"
        assert [c["id"] for c in message["data"]][-1] == "team-talk"


class TestUpdateChannel:

    def test_partial_update(self, client):
        client.post("/api/channels", json={"name": "Team", "maxUsers": 4, "password": "pw"})
        response = client.patch("/api/channels/team", json={"name": "Team Renamed"})
        assert response.status_code == 200
        body = response.json()
        assert body["id"] == "team"
        assert body["name"] == "Team Renamed"
        assert body["capacity"] == 4
        assert body["hasPassword"] is True

    def test_capacity_update(self, client):
        assert client.patch("/api/channels/general", json={"maxUsers": 2}).json()["capacity"] == 2
        assert client.get("/api/channels/general").json()["capacity"] == 2

    def test_password_removed_by_null(self, client):
        client.post("/api/channels", json={"name": "Team", "password": "pw"})
        assert client.patch("/api/channels/team", json={"password": None}).json()["hasPassword"] is False

    def test_password_set(self, client):
        assert client.patch("/api/channels/general", json={"password": "pw"}).json()["hasPassword"] is True

    def test_password_change_takes_effect(self, app, client):
        client.patch("/api/channels/general", json={"password": "old"})
        client.patch("/api/channels/general", json={"password": "new"})
        store = app.state.store
        assert store.verify_password(store.get("general"), "new") is True
        assert store.verify_password(store.get("general"), "old") is False

    def test_unknown_channel(self, client):
        response = client.patch("/api/channels/nope", json={"name": "x"})
        assert response.status_code == 404

    def test_unsupported_media_type(self, client):
        response = client.patch(
            "/api/channels/general", content=b"name=x",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert response.status_code == 415


class TestHealth:

    def test_health(self, client):
        assert client.get("/").text == "Voice chat signaling server is running"
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "channels_count": 3,
            "occupied_channels_count": 0,
            "connections_count": 0,
            "participants_count": 0,
        }

    def test_channel_details(self, tmp_path, monkeypatch):
        monkeypatch.setenv("BCRYPT_ROUNDS", "4")
        monkeypatch.setenv("HEALTH_INCLUDE_CHANNEL_DETAILS", "true")
        app = create_app(Settings(channels_file=str(tmp_path / "channels.json")), rng=random.Random(1))

        service = app.state.service
        connection, _ = service.hub.open_connection(transport="test")
        service.connect(connection)
        anyio.run(service.join, connection.id, "general", "Alice")

        body = TestClient(app).get("/health").json()
        assert body["participants_count"] == 1
        assert body["connections_count"] == 1
        assert body["participants_by_channel"] == {"general": 1}
