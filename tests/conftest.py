import pytest

import voting
from vote_server import create_app

ADMIN_PASSWORD = "test-secret"


@pytest.fixture
def session():
    """Two teams A/B, catalog of rounds 1 and 2"""
    return voting.new_session(["A", "B"], ["Round 1", "Round 2"])


@pytest.fixture
def server():
    return create_app({
        "TESTING": True,
        "ADMIN_PASSWORD": ADMIN_PASSWORD,
        "TEAM_NAMES": ["A", "B"],
        "ROUND_NAMES": ["Round 1", "Round 2"],
    })


@pytest.fixture
def connect(server):
    app, socketio = server
    clients = []

    def _connect():
        client = socketio.test_client(app)
        clients.append(client)
        return client

    yield _connect

    for client in clients:
        if client.is_connected():
            client.disconnect()


@pytest.fixture
def admin(connect):
    """Logged-in admin connection and its capability token"""
    client = connect()
    client.emit("admin_login", {"password": ADMIN_PASSWORD})
    token = named(client.get_received(), "admin_auth")[0]["token"]
    return client, token


def named(received, name):
    """Payloads of the `name` events in a get_received() batch"""
    return [m["args"][0] for m in received if m["name"] == name]
