"""
Pytest configuration for auth_broker. Environment is set before the app is imported;
Redis is replaced by fakeredis so tests need no server.
"""
import os

os.environ["ALLOWED_REDIRECT_DOMAINS"] = "localhost,app,example.com"
os.environ["SPOTIFY_CLIENT_ID"] = "spotify-client"
os.environ["SPOTIFY_CLIENT_SECRET"] = "spotify-secret"
os.environ["TIDAL_CLIENT_ID"] = "tidal-client"
os.environ["TIDAL_CLIENT_SECRET"] = "tidal-secret"
os.environ.pop("CREDENTIAL_RETENTION_SECONDS", None)

import fakeredis
import pytest
from fastapi.testclient import TestClient

from auth_broker.flow import AuthBroker
from auth_broker.main import app, get_broker
from auth_broker.providers import ProviderRegistry, spotify_descriptor, tidal_descriptor

ALLOWED_DOMAINS = ["localhost", "app", "example.com"]


class FakeResponse:
    """Stand-in for httpx.Response in patched httpx.post / httpx.get."""

    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.headers = {"content-type": "application/json"} if body is not None else {}
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def registry():
    return ProviderRegistry(
        [
            spotify_descriptor("spotify-client", "spotify-secret", "http://localhost:8080/auth/spotify/callback"),
            tidal_descriptor("tidal-client", "tidal-secret", "http://localhost:8080/auth/tidal/callback"),
        ]
    )


@pytest.fixture
def broker(fake_redis, registry):
    return AuthBroker.from_redis(fake_redis, registry, ALLOWED_DOMAINS)


@pytest.fixture
def client(broker):
    app.dependency_overrides[get_broker] = lambda: broker
    yield TestClient(app)
    app.dependency_overrides.clear()
