"""
Authorization request helpers: state generation, authorize URL, callback parsing.
"""
import secrets
from dataclasses import dataclass
from urllib.parse import parse_qs, quote, urlencode, urlsplit


def generate_state() -> str:
    """Opaque single-use value for CSRF protection; returned in callback."""
    return secrets.token_urlsafe(32)


def build_authorize_url(
    *,
    authorize_url: str,
    client_id: str,
    redirect_uri: str,
    scopes: list[str],
    state: str,
    force_verify: bool = False,
) -> str:
    """Build provider /authorize URL for the authorization code grant."""
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": " ".join(scopes),
        # force_verify makes the user re-approve the app, used when scopes drift
        "force_verify": "true" if force_verify else "false",
        "response_type": "code",
        "state": state,
    }
    return f"{authorize_url}?{urlencode(params, quote_via=quote)}"


@dataclass(frozen=True)
class CallbackParams:
    state: str | None = None
    code: str | None = None
    error: str | None = None
    error_description: str | None = None


def parse_callback(uri: str) -> CallbackParams:
    """Pull state/code/error out of the redirect URI query string."""
    query = urlsplit(uri).query
    if not query:
        return CallbackParams()
    params = parse_qs(query, keep_blank_values=False)

    def first(name: str) -> str | None:
        values = params.get(name)
        return values[0] if values else None

    return CallbackParams(
        state=first("state"),
        code=first("code"),
        error=first("error"),
        error_description=first("error_description"),
    )
