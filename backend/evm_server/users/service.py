"""Account lookup, registration and password checks."""

import logging
import secrets
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from evm_server.auth.passwords import hash_password, verify_password
from evm_server.errors import ConflictError
from evm_server.users.models import User
from evm_server.users.schemas import UserRegister

log = logging.getLogger(__name__)

SALT_BYTES = 32


async def get_user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    result = await session.execute(select(User).where(User.email == email.lower()))
    return result.scalar_one_or_none()


async def create_user(session: AsyncSession, payload: UserRegister) -> User:
    """
    Register an account, keeping the client's encryption salt or generating one.
    Raises ConflictError if the email is taken. Caller must commit the session.
    """
    email = payload.email.lower()
    if await get_user_by_email(session, email):
        raise ConflictError(f"User already exists: {email}")
    user = User(
        email=email,
        password_hash=hash_password(payload.password),
        encryption_salt=payload.encryption_salt or secrets.token_hex(SALT_BYTES),
    )
    session.add(user)
    await session.flush()
    log.info("Registered %s (client salt=%s)", email, payload.encryption_salt is not None)
    return user


async def authenticate(session: AsyncSession, email: str, password: str) -> Optional[User]:
    """The account when email and password match, else None."""
    user = await get_user_by_email(session, email)
    if user is None or not verify_password(password, user.password_hash):
        return None
    return user
