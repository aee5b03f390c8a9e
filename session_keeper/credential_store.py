"""
Persistent store for the session credential record and user preferences.
Values are plain strings grouped by namespace; the store has no session logic of its own.
"""
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from session_keeper.models import StoredValue

KEY_ACCESS_TOKEN = "AccessToken"
KEY_REFRESH_TOKEN = "RefreshToken"
KEY_LOGIN = "Login"
KEY_USER_ID = "UserId"
KEY_AUTO_LOGIN = "AutoLogin"


@dataclass(frozen=True)
class CredentialRecord:
    access_token: str | None = None
    refresh_token: str | None = None
    login: str | None = None
    user_id: str | None = None

    @property
    def logged_in(self) -> bool:
        """True only when the token and the identity it resolved to are all known."""
        return bool(self.access_token and self.user_id and self.login)


class CredentialStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, namespace: str, key: str) -> str | None:
        with self._session_factory() as db:
            row = db.get(StoredValue, (namespace, key))
            if row is None or not row.value:
                return None
            return row.value

    def set(self, namespace: str, key: str, value: str | None) -> None:
        with self._session_factory() as db:
            row = db.get(StoredValue, (namespace, key))
            if row is None:
                db.add(StoredValue(namespace=namespace, key=key, value=value or ""))
            else:
                row.value = value or ""
            db.commit()

    def clear(self, namespace: str) -> None:
        """Remove every key in namespace."""
        with self._session_factory() as db:
            db.execute(delete(StoredValue).where(StoredValue.namespace == namespace))
            db.commit()

    def keys(self, namespace: str) -> list[str]:
        with self._session_factory() as db:
            rows = db.scalars(select(StoredValue.key).where(StoredValue.namespace == namespace))
            return sorted(rows)

    def load_record(self, namespace: str) -> CredentialRecord:
        return CredentialRecord(
            access_token=self.get(namespace, KEY_ACCESS_TOKEN),
            refresh_token=self.get(namespace, KEY_REFRESH_TOKEN),
            login=self.get(namespace, KEY_LOGIN),
            user_id=self.get(namespace, KEY_USER_ID),
        )
