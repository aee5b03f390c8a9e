"""
Session keeper configuration. Provider endpoints default to the Twitch identity service.
No secrets in this file; client id/secret come from env.
"""
import os
from dataclasses import dataclass, field

# Identity provider endpoints
AUTHORIZE_URL = os.environ.get("OAUTH_AUTHORIZE_URL", "https://id.twitch.tv/oauth2/authorize")
TOKEN_URL = os.environ.get("OAUTH_TOKEN_URL", "https://id.twitch.tv/oauth2/token")
# Provider requires tokens to be validated at startup and hourly
VALIDATE_URL = os.environ.get("OAUTH_VALIDATE_URL", "https://id.twitch.tv/oauth2/validate")
REVOKE_URL = os.environ.get("OAUTH_REVOKE_URL", "https://id.twitch.tv/oauth2/revoke")

# Registered application
CLIENT_ID = os.environ.get("OAUTH_CLIENT_ID", "")
CLIENT_SECRET = os.environ.get("OAUTH_CLIENT_SECRET", "")
REDIRECT_URI = os.environ.get("OAUTH_REDIRECT_URI", "http://localhost:8000/callback")

# Exact scope set the application depends on (space-separated, order kept)
REQUIRED_SCOPES = os.environ.get(
    "OAUTH_SCOPES", "moderator:manage:announcements channel:manage:redemptions"
).split()

# Timing (seconds)
REQUEST_TIMEOUT = float(os.environ.get("SESSION_REQUEST_TIMEOUT", "5"))
VALIDATE_INTERVAL = float(os.environ.get("SESSION_VALIDATE_INTERVAL", "3600"))
STARTUP_VALIDATE_DELAY = float(os.environ.get("SESSION_STARTUP_VALIDATE_DELAY", "1"))
RETRY_DELAY = float(os.environ.get("SESSION_RETRY_DELAY", "0.5"))

# Credential persistence (SQLite is enough for a single desktop session)
DATABASE_URL = os.environ.get("SESSION_DATABASE_URL", "sqlite:///./session_keeper.db")
SESSION_NAMESPACE = "TwitchSession"
PREFERENCES_NAMESPACE = "Twitch"


@dataclass
class Settings:
    authorize_url: str = AUTHORIZE_URL
    token_url: str = TOKEN_URL
    validate_url: str = VALIDATE_URL
    revoke_url: str = REVOKE_URL
    client_id: str = CLIENT_ID
    client_secret: str = CLIENT_SECRET
    redirect_uri: str = REDIRECT_URI
    required_scopes: list[str] = field(default_factory=lambda: list(REQUIRED_SCOPES))
    request_timeout: float = REQUEST_TIMEOUT
    validate_interval: float = VALIDATE_INTERVAL
    startup_validate_delay: float = STARTUP_VALIDATE_DELAY
    retry_delay: float = RETRY_DELAY
    session_namespace: str = SESSION_NAMESPACE
    preferences_namespace: str = PREFERENCES_NAMESPACE
