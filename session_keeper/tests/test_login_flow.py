"""Tests for interactive login: authorize URL, callback state handling, code exchange."""
import asyncio
import logging
from urllib.parse import parse_qs, urlsplit

from session_keeper.errors import PROTOCOL_MISUSE, PROTOCOL_VIOLATION, PROVIDER_REJECTED, SCOPE_DRIFT, TRANSPORT
from session_keeper.gateway import GatewayResult
from session_keeper.manager import AUTHORIZING
from session_keeper.tests.responses import SCOPES, ok, tokens_ok, validate_ok


def state_of(url: str) -> str:
    return parse_qs(urlsplit(url).query)["state"][0]


def callback_uri(state: str, **params) -> str:
    query = "&".join(f"{k}={v}" for k, v in {"state": state, **params}.items())
    return f"http://localhost:8000/callback?{query}"


def issued_tokens(scopes=SCOPES):
    """Token pair "at"/"rt" as issued by the code exchange."""
    return tokens_ok(access="at", refresh="rt", scopes=scopes)


def test_login_opens_authorize_url(make_manager, opened, settings):
    manager, gateway = make_manager()

    async def scenario():
        manager.login()

    asyncio.run(scenario())
    assert manager.loading is True
    assert manager.state == AUTHORIZING
    assert manager.pending_login is True
    assert gateway.calls == []
    url = opened[0]
    assert url.startswith(settings.authorize_url + "?")
    params = parse_qs(urlsplit(url).query)
    assert params["client_id"] == ["cid"]
    assert params["redirect_uri"] == [settings.redirect_uri]
    assert params["scope"] == [" ".join(SCOPES)]
    assert params["response_type"] == ["code"]
    assert params["force_verify"] == ["false"]
    assert "moderator%3Amanage%3Aannouncements%20channel" in url


def test_callback_without_pending_login_is_ignored(make_manager):
    manager, gateway = make_manager()

    async def scenario():
        return manager.handle_callback(callback_uri("anything", code="c"))

    assert asyncio.run(scenario()) is False
    assert gateway.calls == []
    assert manager.last_failure is None


def test_callback_with_wrong_state_keeps_login_pending(make_manager, opened):
    manager, gateway = make_manager()

    async def scenario():
        manager.login()
        return manager.handle_callback(callback_uri("forged", code="c"))

    assert asyncio.run(scenario()) is False
    assert manager.pending_login is True
    assert manager.loading is True
    assert gateway.calls == []


def test_new_login_supersedes_pending_state(make_manager, opened):
    manager, gateway = make_manager(issued_tokens(), validate_ok())

    async def scenario():
        manager.login()
        manager.login(force_verify=True)
        stale = manager.handle_callback(callback_uri(state_of(opened[0]), code="c1"))
        fresh = manager.handle_callback(callback_uri(state_of(opened[1]), code="c2"))
        await manager.wait_idle()
        return stale, fresh

    assert asyncio.run(scenario()) == (False, True)
    assert gateway.calls[0]["data"]["code"] == "c2"


def test_state_is_single_use(make_manager, opened):
    manager, gateway = make_manager(issued_tokens(), validate_ok())

    async def scenario():
        manager.login()
        uri = callback_uri(state_of(opened[0]), code="c")
        first = manager.handle_callback(uri)
        second = manager.handle_callback(uri)
        await manager.wait_idle()
        return first, second

    assert asyncio.run(scenario()) == (True, False)
    token_calls = [c for c in gateway.calls if c["data"].get("grant_type") == "authorization_code"]
    assert len(token_calls) == 1


def test_callback_error_ends_login(make_manager, opened):
    manager, gateway = make_manager()

    async def scenario():
        manager.login()
        manager.handle_callback(callback_uri(state_of(opened[0]), error="access_denied"))

    asyncio.run(scenario())
    assert manager.loading is False
    assert manager.logged_in is False
    assert manager.pending_login is False
    assert manager.last_failure.kind == PROVIDER_REJECTED
    assert gateway.calls == []


def test_callback_without_code_ends_login(make_manager, opened):
    manager, gateway = make_manager()

    async def scenario():
        manager.login()
        manager.handle_callback(callback_uri(state_of(opened[0])))

    asyncio.run(scenario())
    assert manager.loading is False
    assert manager.last_failure.kind == PROTOCOL_VIOLATION


def test_authorize_success_saves_tokens_then_validates(make_manager, opened, store, settings):
    manager, gateway = make_manager(issued_tokens(), validate_ok())
    validated = []
    manager.on_validated(lambda: validated.append(True))

    async def scenario():
        manager.login()
        manager.handle_callback(callback_uri(state_of(opened[0]), code="auth-code", scope="x"))
        await manager.wait_idle()

    asyncio.run(scenario())
    exchange = gateway.calls[0]
    assert exchange["method"] == "POST"
    assert exchange["url"] == settings.token_url
    assert exchange["data"] == {
        "client_id": "cid",
        "client_secret": "secret",
        "code": "auth-code",
        "grant_type": "authorization_code",
        "redirect_uri": settings.redirect_uri,
    }
    assert gateway.calls[1]["headers"]["Authorization"] == "Bearer at"
    record = store.load_record(settings.session_namespace)
    assert (record.access_token, record.refresh_token, record.login, record.user_id) == ("at", "rt", "alice", "42")
    assert manager.logged_in is True
    assert manager.loading is False
    assert validated == [True]


def test_authorize_clears_previous_session_first(make_manager, opened, signed_in, settings):
    manager, gateway = make_manager(GatewayResult(error="Request timed out after 5s"))

    async def scenario():
        manager.login()
        manager.handle_callback(callback_uri(state_of(opened[0]), code="c"))
        await manager.wait_idle()

    asyncio.run(scenario())
    assert signed_in.keys(settings.session_namespace) == []
    assert manager.logged_in is False
    assert manager.loading is False
    assert manager.last_failure.kind == TRANSPORT


def test_authorize_missing_refresh_token_fails(make_manager, opened, store, settings):
    manager, gateway = make_manager(ok({"access_token": "at", "scope": SCOPES}))

    async def scenario():
        manager.login()
        manager.handle_callback(callback_uri(state_of(opened[0]), code="c"))
        await manager.wait_idle()

    asyncio.run(scenario())
    assert store.load_record(settings.session_namespace).access_token is None
    assert manager.loading is False
    assert len(gateway.calls) == 1


def test_authorize_missing_scope_with_auto_login_forces_verify(make_manager, opened, store, settings):
    manager, gateway = make_manager(issued_tokens(scopes=SCOPES[1:]), auto_login=True)

    async def scenario():
        manager.login()
        manager.handle_callback(callback_uri(state_of(opened[0]), code="c"))
        await manager.wait_idle()

    asyncio.run(scenario())
    assert len(opened) == 2
    assert parse_qs(urlsplit(opened[1]).query)["force_verify"] == ["true"]
    assert store.load_record(settings.session_namespace).access_token is None
    assert manager.last_failure.kind == SCOPE_DRIFT
    assert len(gateway.calls) == 1


def test_authorize_scope_mismatch_without_auto_login(make_manager, opened, store, settings):
    manager, gateway = make_manager(issued_tokens(scopes=SCOPES + SCOPES[:1]))

    async def scenario():
        manager.login()
        manager.handle_callback(callback_uri(state_of(opened[0]), code="c"))
        await manager.wait_idle()

    asyncio.run(scenario())
    assert len(opened) == 1
    assert manager.loading is False
    assert manager.logged_in is False
    assert store.keys(settings.session_namespace) == []


def test_stray_callbacks_are_logged_as_misuse(make_manager, opened, caplog):
    manager, gateway = make_manager()

    async def scenario():
        manager.handle_callback(callback_uri("anything", code="c"))
        manager.login()
        manager.handle_callback(callback_uri("forged", code="c"))

    with caplog.at_level(logging.WARNING, logger="session_keeper.manager"):
        asyncio.run(scenario())
    misuse = [r for r in caplog.records if PROTOCOL_MISUSE in r.getMessage()]
    assert len(misuse) == 2
    assert manager.last_failure is None
