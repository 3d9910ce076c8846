import json

import pytest
from fastapi.testclient import TestClient

from app import create_app
from backend import RoomRegistry
from broker import LocalBroker
from transport import Connection


class RecordingWebSocket:
    """Stands in for a Starlette WebSocket; keeps every frame sent to it."""

    def __init__(self, fail: bool = False):
        self.frames = []
        self.fail = fail

    async def send_text(self, text: str):
        if self.fail:
            raise RuntimeError("socket is gone")
        self.frames.append(json.loads(text))


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def broker():
    return LocalBroker()


@pytest.fixture
def client(registry, broker):
    app = create_app(registry=registry, broker=broker)
    # entering the client keeps every socket on one event loop
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_connection():
    def factory(connection_id=None, fail=False):
        return Connection(RecordingWebSocket(fail=fail), connection_id)
    return factory
