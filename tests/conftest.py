import time

import pytest
from fastapi.testclient import TestClient

from config import Config
from identity_client import IdentityExchangeError
from main import create_app
from models import IdentityToken
from store import OAuthStore

OAUTH_ENV_VARS = (
    "HOST",
    "PORT",
    "ENVIRONMENT",
    "REGISTRATION_POLICY",
    "REGISTRATION_ADMIN_TOKEN",
    "RATE_LIMIT_ENABLED",
    "RATE_LIMIT_REGISTER_REQUESTS",
    "OAUTH_TOKEN_LIFETIME",
    "OAUTH_CODE_EXPIRY",
    "OAUTH_PENDING_AUTH_TTL",
    "ALLOWED_ORIGINS",
    "CLEANUP_INTERVAL",
    "OAUTH_DEFAULT_SCOPE",
    "IDENTITY_AUTH_URL",
    "IDENTITY_TOOLKIT_URL",
)


class FakeIdentityClient:
    """Stands in for the upstream exchange; records every assertion it sees"""

    def __init__(self, lifetime=3300):
        self.lifetime = lifetime
        self.assertions = []
        self.fail_with = None
        self.closed = False

    async def exchange(self, assertion):
        self.assertions.append(assertion)
        if self.fail_with:
            raise IdentityExchangeError(self.fail_with)
        return IdentityToken(
            identity_token=f"identity-{assertion}",
            expires_at=time.time() + self.lifetime,
        )

    async def close(self):
        self.closed = True


@pytest.fixture
def env(monkeypatch):
    for name in OAUTH_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("BASE_URL", "https://mcp.test")
    monkeypatch.setenv("CONSENT_URL", "https://console.test")
    monkeypatch.setenv("IDENTITY_API_KEY", "test-api-key")
    return monkeypatch


@pytest.fixture
def config(env):
    return Config()


@pytest.fixture
def store(config):
    return OAuthStore(pending_auth_ttl=config.pending_auth_ttl)


@pytest.fixture
def identity_client():
    return FakeIdentityClient()


@pytest.fixture
def tool_router():
    return None


@pytest.fixture
def test_app(config, store, identity_client, tool_router):
    return create_app(config, store=store, identity_client=identity_client, tool_router=tool_router)


@pytest.fixture
def client(test_app):
    with TestClient(test_app, follow_redirects=False) as test_client:
        yield test_client
