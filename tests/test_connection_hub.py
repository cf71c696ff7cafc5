"""Tests for connection registration and non-blocking delivery."""

from voice_signaling.connection_hub import ConnectionHub


def _registered(hub):
    connection, outbound = hub.open_connection(transport="test")
    hub.register(connection)
    return connection, outbound


def test_ids_are_unique():
    hub = ConnectionHub()
    ids = {hub.open_connection()[0].id for _ in range(50)}
    assert len(ids) == 50


def test_send_to_registered_connection():
    hub = ConnectionHub(buffer_size=4)
    connection, outbound = _registered(hub)
    assert connection.id in hub
    assert hub.send_to(connection.id, "ping", {"n": 1}) is True
    assert outbound.receive_nowait() == {"event": "ping", "data": {"n": 1}}


def test_unknown_connection():
    assert ConnectionHub().send_to("nobody", "ping", {}) is False


def test_full_buffer_drops_message():
    hub = ConnectionHub(buffer_size=1)
    connection, outbound = _registered(hub)
    assert connection.deliver("first", 1) is True
    assert connection.deliver("second", 2) is False
    assert outbound.receive_nowait()["event"] == "first"


def test_closed_receiver_drops_message():
    hub = ConnectionHub()
    connection, outbound = _registered(hub)
    outbound.close()
    assert hub.send_to(connection.id, "ping", {}) is False


def test_unregister_closes_stream():
    hub = ConnectionHub()
    connection, _ = _registered(hub)
    assert hub.unregister(connection.id) is connection
    assert connection.id not in hub
    assert len(hub) == 0
    assert connection.deliver("ping", {}) is False
    assert hub.unregister(connection.id) is None


def test_send_to_many_and_all():
    hub = ConnectionHub()
    a, a_out = _registered(hub)
    b, b_out = _registered(hub)
    c, _ = _registered(hub)

    assert hub.send_to_many([a.id, "missing", b.id], "hello", None) == 2
    assert hub.send_to_all("state", []) == 3
    assert [a_out.receive_nowait()["event"], a_out.receive_nowait()["event"]] == ["hello", "state"]
    assert b_out.receive_nowait()["event"] == "hello"


def test_post_token_resolves_to_connection():
    hub = ConnectionHub()
    connection, _ = _registered(hub)
    token = hub.issue_post_token(connection)
    assert token != connection.id
    assert connection.post_token == token
    assert hub.resolve_post_token(token) == connection.id


def test_public_id_is_not_a_post_token():
    hub = ConnectionHub()
    connection, _ = _registered(hub)
    hub.issue_post_token(connection)
    assert hub.resolve_post_token(connection.id) is None
    assert hub.resolve_post_token("unknown") is None


def test_post_token_removed_on_unregister():
    hub = ConnectionHub()
    connection, _ = _registered(hub)
    token = hub.issue_post_token(connection)
    hub.unregister(connection.id)
    assert hub.resolve_post_token(token) is None
