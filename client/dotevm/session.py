"""
The explicit Session value and its on-disk record.

Components never read the current user from ambient state; they are handed a
Session. The record on disk holds email, local user id, access token and login
time; the refresh token is kept in the OS keyring.
"""

import dataclasses
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotevm.auth.credentials import CredentialsStore

log = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Session:
    email: str
    user_id: int
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    login_time: Optional[str] = None

    @property
    def is_online(self) -> bool:
        """True when the session holds remote credentials."""
        return bool(self.access_token)

    def with_tokens(self, access_token: Optional[str], refresh_token: Optional[str]) -> "Session":
        return dataclasses.replace(self, access_token=access_token, refresh_token=refresh_token)


class SessionStore:
    """Persists the current Session between CLI invocations."""

    def __init__(self, path: Path, credentials: Optional[CredentialsStore] = None) -> None:
        self._path = path
        self._credentials = credentials or CredentialsStore()

    def load(self) -> Optional[Session]:
        """Return the saved session, or None when logged out or the record is unreadable."""
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            email = data["email"]
            user_id = int(data["user_id"])
        except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError) as e:
            log.warning("Ignoring unreadable session record %s: %s", self._path, e)
            return None
        access = data.get("access_token")
        refresh = self._credentials.get_refresh_token(email) if access else None
        return Session(
            email=email,
            user_id=user_id,
            access_token=access,
            refresh_token=refresh,
            login_time=data.get("login_time"),
        )

    def save(self, session: Session) -> Session:
        """Write the session; stamps login_time if missing."""
        if not session.login_time:
            session = dataclasses.replace(
                session, login_time=datetime.now(timezone.utc).isoformat()
            )
        data = {
            "email": session.email,
            "user_id": session.user_id,
            "access_token": session.access_token,
            "login_time": session.login_time,
            "is_online": session.is_online,
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        if session.refresh_token:
            self._credentials.set_refresh_token(session.email, session.refresh_token)
        log.debug("Session saved for %s (online=%s)", session.email, session.is_online)
        return session

    def update_tokens(self, session: Session, access_token: str, refresh_token: str) -> Session:
        return self.save(session.with_tokens(access_token, refresh_token))

    def drop_tokens(self, session: Session) -> Session:
        """Keep the local identity but forget remote credentials (after auth expiry)."""
        self._credentials.clear(session.email)
        return self.save(session.with_tokens(None, None))

    def clear(self) -> None:
        """Log out completely."""
        session = self.load()
        if session:
            self._credentials.clear(session.email)
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
