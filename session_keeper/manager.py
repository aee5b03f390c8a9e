"""
Token lifecycle manager: login, validate, refresh and logout against the identity provider.

Runs on the asyncio event loop. Public operations are plain methods that start a step and
return; network steps run as tasks and resume in the matching *_finished continuation.
"Schedule X" means X runs after settings.retry_delay on the same loop. The loading flag is
advisory: forced validates and follow-up steps scheduled from failure paths bypass it.
"""
import asyncio
import functools
import logging
from collections.abc import Callable

from session_keeper.authorize import build_authorize_url, generate_state, parse_callback
from session_keeper.config import Settings
from session_keeper.credential_store import (
    KEY_ACCESS_TOKEN,
    KEY_AUTO_LOGIN,
    KEY_LOGIN,
    KEY_REFRESH_TOKEN,
    KEY_USER_ID,
    CredentialRecord,
    CredentialStore,
)
from session_keeper.errors import (
    PROTOCOL_MISUSE,
    PROTOCOL_VIOLATION,
    PROVIDER_REJECTED,
    SCOPE_DRIFT,
    Failure,
    classify,
    describe,
)
from session_keeper.gateway import GatewayResult, HttpGateway
from session_keeper.scopes import parse_scopes, scopes_match

logger = logging.getLogger(__name__)

LOGGED_OUT = "logged_out"
AUTHORIZING = "authorizing"
VALIDATING = "validating"
REFRESHING = "refreshing"
LOGGING_OUT = "logging_out"
LOGGED_IN = "logged_in"


def _settle_on_error(method):
    """Clear loading if a step blows up before it hands off to a request or timer."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except Exception:
            logger.exception("%s failed unexpectedly", method.__name__)
            self._finish()
            raise

    return wrapper


class TokenLifecycleManager:
    def __init__(
        self,
        store: CredentialStore,
        gateway: HttpGateway,
        launcher: Callable[[str], object],
        settings: Settings | None = None,
    ):
        self.settings = settings or Settings()
        self._store = store
        self._gateway = gateway
        self._launcher = launcher

        self._expected_state: str | None = None
        self._loading = False
        self._activity: str | None = None
        self._last_failure: Failure | None = None
        self._auto_login = store.get(self.settings.preferences_namespace, KEY_AUTO_LOGIN) == "true"

        self._tasks: set[asyncio.Task] = set()
        self._timers: set[asyncio.TimerHandle] = set()
        self._startup_timer: asyncio.TimerHandle | None = None
        self._heartbeat: asyncio.Task | None = None

        self._validated_callbacks: list[Callable[[], object]] = []
        self._status_callbacks: list[Callable[[bool, bool], object]] = []
        self._last_status = (self._loading, self.logged_in)

    # --- status -----------------------------------------------------------

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def record(self) -> CredentialRecord:
        return self._store.load_record(self.settings.session_namespace)

    @property
    def logged_in(self) -> bool:
        return self.record.logged_in

    @property
    def access_token(self) -> str | None:
        return self._store.get(self.settings.session_namespace, KEY_ACCESS_TOKEN)

    @property
    def login_name(self) -> str | None:
        return self._store.get(self.settings.session_namespace, KEY_LOGIN)

    @property
    def user_id(self) -> str | None:
        return self._store.get(self.settings.session_namespace, KEY_USER_ID)

    @property
    def pending_login(self) -> bool:
        return self._expected_state is not None

    @property
    def last_failure(self) -> Failure | None:
        return self._last_failure

    @property
    def state(self) -> str:
        if self._loading:
            return self._activity or AUTHORIZING
        return LOGGED_IN if self.logged_in else LOGGED_OUT

    @property
    def auto_login(self) -> bool:
        return self._auto_login

    @auto_login.setter
    def auto_login(self, enabled: bool) -> None:
        self._auto_login = bool(enabled)
        self._store.set(self.settings.preferences_namespace, KEY_AUTO_LOGIN, "true" if enabled else "false")

    def on_validated(self, callback: Callable[[], object]) -> None:
        self._validated_callbacks.append(callback)

    def on_status_changed(self, callback: Callable[[bool, bool], object]) -> None:
        """callback(loading, logged_in) runs whenever either value changes."""
        self._status_callbacks.append(callback)

    # --- downstream consumers ----------------------------------------------

    def request_headers(self) -> dict[str, str]:
        """Headers for authenticated resource requests made by other components."""
        headers = {"Client-Id": self.settings.client_id}
        access_token = self.access_token
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    def handle_unauthorized(self) -> None:
        """A resource request came back 401; try to repair the session before the caller retries."""
        logger.warning("Resource request not authorized, refreshing tokens...")
        self._schedule(self.refresh)

    # --- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        """Validate shortly after startup and then every validate_interval while running."""
        loop = asyncio.get_running_loop()
        self._startup_timer = loop.call_later(self.settings.startup_validate_delay, self.validate)
        self._heartbeat = loop.create_task(self._validate_periodically())

    async def _validate_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.settings.validate_interval)
            try:
                self.validate()
            except Exception:
                logger.warning("Periodic validate failed, retrying next interval")

    def stop(self) -> None:
        if self._startup_timer is not None:
            self._startup_timer.cancel()
            self._startup_timer = None
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()

    async def aclose(self) -> None:
        self.stop()
        await self._gateway.aclose()

    async def wait_idle(self) -> None:
        """
        Wait until no request or scheduled step is outstanding (periodic validate excluded).
        Used on shutdown so a courtesy revoke gets a chance to reach the provider.
        """
        while self._tasks or self._timers:
            if self._tasks:
                await asyncio.wait(set(self._tasks))
            else:
                await asyncio.sleep(min(self.settings.retry_delay, 0.05))

    # --- login / authorize --------------------------------------------------

    @_settle_on_error
    def login(self, force_verify: bool = False) -> None:
        """Open the provider consent page. Any earlier pending login is abandoned."""
        self._set_loading(AUTHORIZING)
        self._expected_state = generate_state()
        url = build_authorize_url(
            authorize_url=self.settings.authorize_url,
            client_id=self.settings.client_id,
            redirect_uri=self.settings.redirect_uri,
            scopes=self.settings.required_scopes,
            state=self._expected_state,
            force_verify=force_verify,
        )
        logger.info("Opening browser for login (force_verify=%s)...", force_verify)
        self._launcher(url)

    @_settle_on_error
    def handle_callback(self, uri: str) -> bool:
        """
        Accept the provider redirect. Returns True when the callback matched the pending
        login and was consumed; spurious or replayed callbacks are logged and dropped.
        """
        if self._expected_state is None:
            logger.warning("Unexpected callback, no login pending (%s)", PROTOCOL_MISUSE)
            return False

        params = parse_callback(uri)
        if params.state != self._expected_state:
            logger.warning("Ignoring callback with incorrect state (%s)", PROTOCOL_MISUSE)
            return False
        # a state value authorizes at most one exchange
        self._expected_state = None

        if params.error:
            self._fail(PROVIDER_REJECTED, "authorize", params.error_description or params.error)
            self._finish()
            return True
        if not params.code:
            self._fail(PROTOCOL_VIOLATION, "authorize", "callback carried no authorization code")
            self._finish()
            return True

        self._set_loading(AUTHORIZING)
        self._store.clear(self.settings.session_namespace)
        logger.info("Sending request to authorize session...")
        self._send(
            self._authorize_finished,
            "POST",
            self.settings.token_url,
            data={
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "code": params.code,
                "grant_type": "authorization_code",
                "redirect_uri": self.settings.redirect_uri,
            },
        )
        return True

    def _authorize_finished(self, result: GatewayResult) -> None:
        if not result.ok:
            self._fail(classify(result), "authorize", describe(result))
            self._finish()
            return

        response = result.json()
        access_token = response.get("access_token")
        refresh_token = response.get("refresh_token")
        if not access_token or not refresh_token:
            self._fail(PROTOCOL_VIOLATION, "authorize", "did not receive tokens")
            self._finish()
            return

        granted = parse_scopes(response.get("scope"))
        if not scopes_match(self.settings.required_scopes, granted):
            self._scope_drift("authorize", granted)
            return

        self._save_tokens(access_token, refresh_token)
        logger.info("Authorize success!")
        # good faith check that the new tokens are actually usable
        self._schedule(self.validate, True)

    # --- validate -----------------------------------------------------------

    @_settle_on_error
    def validate(self, force: bool = False) -> bool:
        """
        Confirm the stored access token with the provider. Refused (returns False) while
        another step is in progress unless force is set.
        """
        if self._loading and not force:
            logger.warning("Cannot validate while other actions are in progress!")
            return False

        self._set_loading(VALIDATING)
        access_token = self.access_token
        if not access_token:
            if self._auto_login:
                logger.info("Attempting auto login...")
                self._schedule(self.login)
            else:
                logger.warning("Validate failed: no session!")
                self._finish()
            return True

        logger.info("Sending request to validate tokens...")
        self._send(
            self._validate_finished,
            "GET",
            self.settings.validate_url,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return True

    def _validate_finished(self, result: GatewayResult) -> None:
        if not result.ok:
            # usually an expired access token, which refresh can repair without the user
            self._fail(classify(result), "validate", describe(result))
            self._schedule(self.refresh)
            return

        response = result.json()
        granted = parse_scopes(response.get("scopes", response.get("scope")))
        if not scopes_match(self.settings.required_scopes, granted):
            self._scope_drift("validate", granted)
            return

        login = str(response.get("login") or "")
        user_id = str(response.get("user_id") or "")
        self._store.set(self.settings.session_namespace, KEY_LOGIN, login)
        self._store.set(self.settings.session_namespace, KEY_USER_ID, user_id)
        self._last_failure = None
        self._finish()
        logger.info("Validate success!")
        logger.debug("  Login: %s  UserId: %s", login, user_id)
        for callback in list(self._validated_callbacks):
            callback()

    # --- refresh ------------------------------------------------------------

    @_settle_on_error
    def refresh(self) -> None:
        """Trade the stored refresh token for a new token pair."""
        self._set_loading(REFRESHING)
        record = self.record
        if not record.access_token:
            if self._auto_login:
                logger.info("Attempting auto login...")
                self._schedule(self.login)
            else:
                logger.warning("Refresh failed: no session!")
                self._finish()
            return
        if not record.refresh_token:
            logger.warning("Refresh failed: missing refresh token, logging out...")
            self._schedule(self.logout)
            return

        logger.info("Sending request to refresh tokens...")
        self._send(
            self._refresh_finished,
            "POST",
            self.settings.token_url,
            data={
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": record.refresh_token,
            },
        )

    def _refresh_finished(self, result: GatewayResult) -> None:
        if not result.ok:
            self._fail(classify(result), "refresh", describe(result))
            self._recover_session()
            return

        response = result.json()
        access_token = response.get("access_token")
        refresh_token = response.get("refresh_token")
        if not access_token or not refresh_token:
            self._fail(PROTOCOL_VIOLATION, "refresh", "did not receive new tokens")
            self._recover_session()
            return

        granted = parse_scopes(response.get("scope"))
        if not scopes_match(self.settings.required_scopes, granted):
            self._scope_drift("refresh", granted)
            return

        self._save_tokens(access_token, refresh_token)
        self._last_failure = None
        self._finish()
        logger.info("Refresh success!")

    # --- logout -------------------------------------------------------------

    @_settle_on_error
    def logout(self) -> None:
        """
        Forget the session locally, then ask the provider to revoke the access token.
        The revoke outcome never changes local state.

        When not signed in nothing is sent, but any partial record left behind (for
        example tokens whose identity was never resolved) is still erased, so the
        session namespace is always empty afterwards.
        """
        if not self.logged_in:
            logger.debug("Can't log out if we aren't signed in!")
            # drop partial records such as tokens whose identity was never resolved
            self._store.clear(self.settings.session_namespace)
            self._finish()
            return

        self._set_loading(LOGGING_OUT)
        access_token = self.access_token
        self._store.clear(self.settings.session_namespace)
        self._finish()
        logger.info("Logged out.")
        if not access_token:
            return

        logger.info("Sending request to revoke tokens...")
        self._send(
            self._logout_finished,
            "POST",
            self.settings.revoke_url,
            data={"client_id": self.settings.client_id, "token": access_token},
        )

    def _logout_finished(self, result: GatewayResult) -> None:
        # nothing left to undo: the session was removed when logout was requested
        if result.ok:
            logger.info("Revoke success!")
        else:
            logger.info("Revoke failed (ignored): %s", describe(result))

    # --- helpers ------------------------------------------------------------

    def _save_tokens(self, access_token: str, refresh_token: str) -> None:
        self._store.set(self.settings.session_namespace, KEY_ACCESS_TOKEN, access_token)
        self._store.set(self.settings.session_namespace, KEY_REFRESH_TOKEN, refresh_token)
        self._notify_status()

    def _scope_drift(self, operation: str, granted: list[str]) -> None:
        self._fail(SCOPE_DRIFT, operation, f"scopes do not match: {granted}")
        if self._auto_login:
            logger.info("Attempting auto login with forced verification...")
            self._schedule(self.login, True)
        elif operation == "authorize":
            self._finish()
        else:
            logger.warning("Logging out due to invalid scopes...")
            self._schedule(self.logout)

    def _recover_session(self) -> None:
        if self._auto_login:
            logger.info("Attempting auto login...")
            self._schedule(self.login)
        else:
            logger.warning("Logging out due to failed refresh...")
            self._schedule(self.logout)

    def _fail(self, kind: str, operation: str, message: str) -> None:
        self._last_failure = Failure(kind=kind, operation=operation, message=message)
        logger.warning("%s failed (%s): %s", operation.capitalize(), kind, message)

    def _set_loading(self, activity: str) -> None:
        self._loading = True
        self._activity = activity
        self._notify_status()

    def _finish(self) -> None:
        self._loading = False
        self._activity = None
        self._notify_status()

    def _notify_status(self) -> None:
        status = (self._loading, self.logged_in)
        if status == self._last_status:
            return
        self._last_status = status
        for callback in list(self._status_callbacks):
            callback(*status)

    def _schedule(self, callback: Callable, *args) -> None:
        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._timers.discard(handle)
            callback(*args)

        handle = loop.call_later(self.settings.retry_delay, fire)
        self._timers.add(handle)

    def _send(self, continuation: Callable[[GatewayResult], None], method: str, url: str, **kwargs) -> None:
        task = asyncio.get_running_loop().create_task(self._exchange(continuation, method, url, **kwargs))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    async def _exchange(self, continuation: Callable[[GatewayResult], None], method: str, url: str, **kwargs) -> None:
        result = await self._gateway.request(method, url, **kwargs)
        continuation(result)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Session step crashed", exc_info=exc)
            self._finish()
