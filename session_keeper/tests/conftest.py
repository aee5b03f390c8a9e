"""
Pytest configuration for session_keeper. In-memory SQLite and zero retry delay so
scheduled follow-up steps run immediately.
"""
import asyncio
import os

os.environ["SESSION_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["SESSION_RETRY_DELAY"] = "0"
# The web app should not validate on its own while route tests run
os.environ["SESSION_STARTUP_VALIDATE_DELAY"] = "3600"

import pytest

from session_keeper.config import Settings
from session_keeper.credential_store import CredentialStore
from session_keeper.database import init_db, make_engine
from session_keeper.gateway import GatewayResult
from session_keeper.manager import TokenLifecycleManager
from session_keeper.tests.responses import SCOPES


class FakeGateway:
    """Provider double: returns scripted results in order and records every request."""

    def __init__(self, *results: GatewayResult):
        self.results = list(results)
        self.calls: list[dict] = []
        self.closed = False

    async def request(self, method, url, *, headers=None, data=None):
        self.calls.append({"method": method, "url": url, "headers": headers or {}, "data": data or {}})
        await asyncio.sleep(0)
        if not self.results:
            return GatewayResult(error="no scripted response")
        return self.results.pop(0)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def settings():
    return Settings(
        authorize_url="https://id.example/oauth2/authorize",
        token_url="https://id.example/oauth2/token",
        validate_url="https://id.example/oauth2/validate",
        revoke_url="https://id.example/oauth2/revoke",
        client_id="cid",
        client_secret="secret",
        redirect_uri="http://localhost:8000/callback",
        required_scopes=list(SCOPES),
        retry_delay=0,
        startup_validate_delay=0,
        validate_interval=3600,
    )


@pytest.fixture
def store():
    return CredentialStore(init_db(make_engine("sqlite:///:memory:")))


@pytest.fixture
def opened():
    """URLs handed to the browser launcher."""
    return []


@pytest.fixture
def make_manager(store, settings, opened):
    def _make(*results: GatewayResult, auto_login: bool = False):
        gateway = FakeGateway(*results)
        manager = TokenLifecycleManager(store=store, gateway=gateway, launcher=opened.append, settings=settings)
        if auto_login:
            manager.auto_login = True
        return manager, gateway

    return _make


@pytest.fixture
def signed_in(store, settings):
    """Persist a complete session: token pair plus resolved identity."""
    ns = settings.session_namespace
    store.set(ns, "AccessToken", "at")
    store.set(ns, "RefreshToken", "rt")
    store.set(ns, "Login", "alice")
    store.set(ns, "UserId", "42")
    return store
