"""
Shared pytest fixtures.

Environment variables are set BEFORE any project imports so that importing
main (which builds a module-level app) never touches a real database or
demands production secrets.
"""

import base64
import hashlib
import os
import re
import secrets
from typing import Optional

import pytest

os.environ["ENVIRONMENT"] = "development"
os.environ["BASE_URL"] = "http://testserver"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
for name in ("REDIS_URL", "IDENTITY_HEADER", "LOGIN_URL", "MCP_API_KEY", "MCP_ALLOWED_IPS", "RESOURCE_URL"):
    os.environ.pop(name, None)

from fastapi.testclient import TestClient  # noqa: E402

from config import Config  # noqa: E402
from database import Database  # noqa: E402
from main import create_app  # noqa: E402
from stores import MemoryCodeStore  # noqa: E402

REDIRECT_URI = "https://a.example/cb"
CSRF_PATTERN = re.compile(r'name="csrf_token" value="([^"]+)"')


class FakeClock:
    """Manually advanced replacement for time.time"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class StaticIdentityProvider:
    """Identity provider whose signed-in user is set by the test"""

    def __init__(self, user_id: Optional[str] = "user-1"):
        self.user_id = user_id
        self.calls = 0

    async def current_user_id(self, request) -> Optional[str]:
        self.calls += 1
        return self.user_id


def make_pkce(verifier: Optional[str] = None):
    """Return (code_verifier, S256 code_challenge)"""
    verifier = verifier or secrets.token_urlsafe(48)
    challenge = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
    return verifier, challenge


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def code_store(clock):
    return MemoryCodeStore(clock=clock)


@pytest.fixture
def identity():
    return StaticIdentityProvider()


@pytest.fixture
def app(config, database, code_store, identity):
    return create_app(config, database=database, code_store=code_store, identity_provider=identity)


@pytest.fixture
def auth_manager(app):
    return app.state.auth_manager


@pytest.fixture
def client(app):
    return TestClient(app, follow_redirects=False)


@pytest.fixture
def registered(client):
    """A client registered through the public endpoint"""
    response = client.post(
        "/oauth/register",
        json={"client_name": "Test Agent", "redirect_uris": [REDIRECT_URI]},
    )
    assert response.status_code == 201
    return response.json()


def authorize_params(client_id: str, challenge: str, redirect_uri: str = REDIRECT_URI, state: Optional[str] = None):
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    if state is not None:
        params["state"] = state
    return params


def open_consent(client: TestClient, params: dict) -> str:
    """GET the consent page and return its CSRF token"""
    response = client.get("/oauth/authorize", params=params)
    assert response.status_code == 200, response.text
    match = CSRF_PATTERN.search(response.text)
    assert match, "consent page has no csrf_token field"
    return match.group(1)


def submit_consent(client: TestClient, params: dict, action: str = "approve"):
    """Walk the consent page and post the decision; returns the response"""
    csrf_token = open_consent(client, params)
    form = {key: value for key, value in params.items() if key != "response_type"}
    form["csrf_token"] = csrf_token
    form["action"] = action
    return client.post("/oauth/authorize", data=form)


@pytest.fixture
def obtain_code(client):
    """Approve an authorization request and return (code, location)"""
    from urllib.parse import parse_qs, urlsplit

    def _obtain(client_id: str, challenge: str, state: Optional[str] = None):
        response = submit_consent(client, authorize_params(client_id, challenge, state=state))
        assert response.status_code == 302, response.text
        location = response.headers["location"]
        query = parse_qs(urlsplit(location).query)
        return query["code"][0], location

    return _obtain
