"""Register, login and logout, online when the server is reachable and offline otherwise."""

import logging
from typing import Optional

from dotevm.api.client import EvmAPI
from dotevm.auth.passwords import hash_password, verify_password
from dotevm.crypto.cipher import generate_salt
from dotevm.errors import (
    ConnectivityError,
    ConstraintError,
    NotFoundError,
    RemoteError,
    Result,
    ValidationError,
)
from dotevm.session import Session, SessionStore
from dotevm.store.local import LocalStore
from dotevm.store.models import User, utcnow

log = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


class AuthService:
    def __init__(self, store: LocalStore, sessions: SessionStore, api: EvmAPI) -> None:
        self._store = store
        self._sessions = sessions
        self._api = api

    def _start_session(self, user: User, data: Optional[dict]) -> Session:
        self._store.update_user(user.id, last_login=utcnow()).unwrap()
        session = Session(email=user.email, user_id=user.id)
        if data:
            session = session.with_tokens(data["access_token"], data["refresh_token"])
        return self._sessions.save(session)

    def _server_up(self) -> bool:
        """Short health check so an unreachable server fails fast instead of after a request timeout."""
        up = self._api.health()
        log.debug("Server health check: %s", "up" if up else "down")
        return up

    def register(self, email: str, password: str) -> Result[Session]:
        """
        Create the account locally and on the server. If the server is unreachable the
        account is local-only until the next online login.
        """
        email = (email or "").strip().lower()
        if "@" not in email:
            return Result.failure(ValidationError("A valid email is required"))
        if len(password or "") < MIN_PASSWORD_LENGTH:
            return Result.failure(
                ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
            )
        if self._store.get_user_by_email(email).ok:
            return Result.failure(ConstraintError(f"User already exists: {email}"))
        salt = generate_salt()
        data = None
        try:
            if self._server_up():
                data = self._api.register(email, password, salt)
                salt = data.get("encryption_salt") or salt
            else:
                log.info("Registering %s locally only", email)
        except ConnectivityError:
            log.warning("Server unreachable; registering %s locally only", email)
        except ConstraintError:
            return Result.failure(
                ConstraintError(f"{email} is already registered on the server; use 'evm login'")
            )
        except (RemoteError, ValidationError) as e:
            return Result.failure(e)
        created = self._store.create_user(email, hash_password(password), salt, synced=data is not None)
        if not created.ok:
            return Result.failure(created.error)
        return Result.success(self._start_session(created.value, data))

    def login(self, email: str, password: str) -> Result[Session]:
        """Log in against the server, or against the local password hash when offline."""
        email = (email or "").strip().lower()
        local = self._store.get_user_by_email(email)
        local_user: Optional[User] = local.value if local.ok else None
        try:
            if not self._server_up():
                raise ConnectivityError("health check failed")
            data = self._api.login(email, password)
        except ConnectivityError:
            log.warning("Server unreachable; trying offline login for %s", email)
            if local_user is None or not verify_password(password, local_user.password_hash):
                return Result.failure(ValidationError("Invalid email or password"))
            return Result.success(self._start_session(local_user, None))
        except (RemoteError, NotFoundError, ValidationError) as e:
            if (
                local_user is not None
                and not local_user.synced_to_server
                and verify_password(password, local_user.password_hash)
            ):
                return self._upload_local_account(local_user, password)
            log.warning("Login failed for %s: %s", email, e)
            return Result.failure(ValidationError("Invalid email or password"))

        remote_salt = data.get("encryption_salt")
        if local_user is None:
            created = self._store.create_user(
                email, hash_password(password), remote_salt or generate_salt(), synced=True
            )
            if not created.ok:
                return Result.failure(created.error)
            local_user = created.value
        else:
            if remote_salt and remote_salt != local_user.encryption_salt:
                log.warning("Server salt for %s differs from local salt; keeping local", email)
            self._store.update_user(
                local_user.id, password_hash=hash_password(password), synced_to_server=True
            ).unwrap()
        log.info("Logged in as %s (online)", email)
        return Result.success(self._start_session(local_user, data))

    def _upload_local_account(self, user: User, password: str) -> Result[Session]:
        """Register an account that was created offline, keeping its salt."""
        try:
            data = self._api.register(user.email, password, user.encryption_salt or generate_salt())
        except ConnectivityError:
            return Result.success(self._start_session(user, None))
        except (ConstraintError, RemoteError, ValidationError) as e:
            return Result.failure(e)
        self._store.update_user(user.id, synced_to_server=True).unwrap()
        log.info("Uploaded local-only account %s", user.email)
        return Result.success(self._start_session(user, data))

    def logout(self) -> None:
        self._sessions.clear()
