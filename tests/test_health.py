from fastapi.testclient import TestClient

from todoboard import __version__
from todoboard.config import Settings
from todoboard.main import create_app
from todoboard.store import MemoryStore


def test_health():
    client = TestClient(create_app(Settings(), store=MemoryStore()))
    assert client.get("/v1/health").json() == {"status": "ok"}


def test_version():
    client = TestClient(create_app(Settings(), store=MemoryStore()))
    assert client.get("/v1/version").json() == {"version": __version__}
