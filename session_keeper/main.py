"""
Session Keeper web app: receives the provider redirect and exposes session controls.
GET /callback hands the redirect to the token manager; POST routes drive login/logout/refresh/validate.
"""
import asyncio
import html
import logging
import webbrowser
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from session_keeper.config import DATABASE_URL, Settings
from session_keeper.credential_store import CredentialStore
from session_keeper.database import init_db, make_engine
from session_keeper.gateway import HttpGateway
from session_keeper.manager import TokenLifecycleManager

logger = logging.getLogger(__name__)


def open_browser(url: str) -> None:
    webbrowser.open(url)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the token manager on startup; start periodic validation; close on shutdown."""
    settings = Settings()
    session_factory = init_db(make_engine(DATABASE_URL))
    manager = TokenLifecycleManager(
        store=CredentialStore(session_factory),
        gateway=HttpGateway(timeout=settings.request_timeout),
        # looked up at call time so tests can patch open_browser
        launcher=lambda url: open_browser(url),
        settings=settings,
    )
    manager.start()
    app.state.manager = manager
    try:
        yield
    finally:
        try:
            await asyncio.wait_for(manager.wait_idle(), timeout=settings.request_timeout)
        except asyncio.TimeoutError:
            logger.warning("Shutting down with session requests still in flight")
        await manager.aclose()


app = FastAPI(title="Session Keeper", version="0.1.0", lifespan=lifespan)


def _manager(request: Request) -> TokenLifecycleManager:
    return request.app.state.manager


def _page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  <p>{html.escape(message)}</p>
  <p><a href="/">Home</a></p>
</body>
</html>""",
        status_code=status_code,
    )


def _status(manager: TokenLifecycleManager) -> dict:
    failure = manager.last_failure
    return {
        "state": manager.state,
        "loading": manager.loading,
        "logged_in": manager.logged_in,
        "login": manager.login_name,
        "user_id": manager.user_id,
        "auto_login": manager.auto_login,
        "pending_login": manager.pending_login,
        "last_failure": failure.as_dict() if failure else None,
    }


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "session_keeper"}


@app.get("/status")
async def status(request: Request):
    """Current session status. Tokens are never included."""
    return _status(_manager(request))


@app.get("/", response_class=HTMLResponse)
async def home(request: Request):
    """Status page with session controls."""
    manager = _manager(request)
    who = html.escape(manager.login_name or "") if manager.logged_in else "nobody"
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Session Keeper</title></head>
<body>
  <h1>Session Keeper</h1>
  <p>State: <code>{html.escape(manager.state)}</code></p>
  <p>Signed in as: {who}</p>
  <form method="post" action="/login"><button type="submit">Log in</button></form>
  <form method="post" action="/logout"><button type="submit">Log out</button></form>
</body>
</html>"""
    )


@app.get("/callback", response_class=HTMLResponse)
async def callback(request: Request):
    """Provider redirect target (?code=...&state=... or ?error=...&state=...)."""
    manager = _manager(request)
    if not manager.handle_callback(str(request.url)):
        return _page("Error", "Invalid or expired state. Please try logging in again.", status_code=400)
    failure = manager.last_failure
    if not manager.loading and failure is not None and failure.operation == "authorize":
        return _page("Login error", failure.message, status_code=400)
    return _page("Login received", "Finishing sign in. You can close this window.")


@app.post("/login")
async def login(request: Request, force_verify: bool = False):
    _manager(request).login(force_verify)
    return _status(_manager(request))


@app.post("/logout")
async def logout(request: Request):
    _manager(request).logout()
    return _status(_manager(request))


@app.post("/refresh")
async def refresh(request: Request):
    _manager(request).refresh()
    return _status(_manager(request))


@app.post("/validate")
async def validate(request: Request, force: bool = False):
    manager = _manager(request)
    started = manager.validate(force)
    return {"started": started, **_status(manager)}


class AutoLoginBody(BaseModel):
    enabled: bool


@app.put("/auto-login")
async def set_auto_login(request: Request, body: AutoLoginBody):
    manager = _manager(request)
    manager.auto_login = body.enabled
    return _status(manager)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "session_keeper.main:app",
        host="127.0.0.1",
        port=8000,
        reload=False,
    )
