import sys
from pathlib import Path

# ensure project root is importable for tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

import main
from backend_client import PetrollClient


class FakeBackend:
    """Routes (method, path) to canned responses and records every request."""

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.http = httpx.Client(transport=httpx.MockTransport(self.handle), base_url="http://backend.test")
        self.client = PetrollClient(http=self.http)

    def on(self, method, path, handler=None, **response_kwargs):
        if handler is None:
            status = response_kwargs.pop("status_code", 200)
            handler = lambda request: httpx.Response(status, **response_kwargs)
        self.routes[(method, path)] = handler

    def handle(self, request):
        self.calls.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, text="not found")
        return handler(request)

    def paths(self):
        return [call.url.path for call in self.calls]


def make_token(issued_at=None, secret="backend-signing-secret-for-tests-0123456789", **claims):
    issued_at = issued_at or datetime.now(timezone.utc)
    payload = {"sub": "42", "iat": int(issued_at.timestamp())}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def user_payload(**overrides):
    data = {
        "userId": 42,
        "userName": "Maya",
        "userEmail": "maya@petroll.co",
        "userType": "Owner",
        "phone": "0917000000",
        "address": "12 Bark St",
        "createdAt": "2025-01-05T10:00:00",
    }
    data.update(overrides)
    return data


@pytest.fixture(autouse=True)
def isolate_state():
    """Reset module-level state so tests do not depend on run order."""
    main.logs.clear()
    main.LOGIN_ATTEMPTS.clear()
    main._role_switcher = None
    yield
    main.logs.clear()
    main.LOGIN_ATTEMPTS.clear()
    main._role_switcher = None
    main.app.dependency_overrides.clear()


@pytest.fixture
def backend():
    fake = FakeBackend()
    main.app.dependency_overrides[main.get_backend] = lambda: fake.client
    yield fake
    fake.http.close()


@pytest.fixture
def client(backend):
    with TestClient(main.app) as test_client:
        yield test_client


@pytest.fixture
def token_factory():
    return make_token


@pytest.fixture
def logged_in(client, backend):
    """Log in through the real /login route and return the issued token."""

    def _login(issued_at=None, **user_overrides):
        token = make_token(issued_at)
        backend.on("POST", "/login", json={"user": user_payload(**user_overrides), "token": token})
        r = client.post("/login", data={"user_email": "maya@petroll.co", "password": "secret1"}, follow_redirects=False)
        assert r.status_code == 303
        assert r.headers["location"] == "/homeScreen"
        return token

    return _login


def twelve_hours_ago(extra=timedelta(0)):
    return datetime.now(timezone.utc) - timedelta(hours=12) - extra


def location(response):
    """Split a redirect into its path and flattened query parameters."""
    parts = urlsplit(response.headers["location"])
    return parts.path, {k: v[0] for k, v in parse_qs(parts.query).items()}
