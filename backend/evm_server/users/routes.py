"""Auth routes: register, login, refresh, me."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from evm_server.auth.dependencies import get_current_user
from evm_server.auth.jwt import REFRESH, check_token, create_access_token, create_refresh_token
from evm_server.config import get_settings
from evm_server.db.session import get_db
from evm_server.limiter import limiter
from evm_server.users.models import User
from evm_server.users.schemas import AccountOut, Credentials, RefreshRequest, TokenPair, UserRegister
from evm_server.users.service import authenticate, create_user, get_user_by_email

router = APIRouter(prefix="/auth", tags=["auth"])
log = logging.getLogger(__name__)

DbSession = Annotated[AsyncSession, Depends(get_db)]


def _issue(user: User) -> TokenPair:
    return TokenPair(
        access_token=create_access_token(user.email),
        refresh_token=create_refresh_token(user.email),
        expires_in=get_settings().access_token_expire_minutes * 60,
        encryption_salt=user.encryption_salt,
    )


@router.post("/register", response_model=TokenPair, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def register(request: Request, body: UserRegister, session: DbSession) -> TokenPair:
    """Create an account; 409 when the email is taken."""
    return _issue(await create_user(session, body))


@router.post("/login", response_model=TokenPair)
@limiter.limit("10/minute")
async def login(request: Request, body: Credentials, session: DbSession) -> TokenPair:
    """Tokens plus the stored encryption salt, so a new machine can decrypt."""
    user = await authenticate(session, body.email, body.password)
    if user is None:
        log.warning("Login failed for %s", body.email)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password"
        )
    log.info("Login for %s", user.email)
    return _issue(user)


@router.post("/refresh", response_model=TokenPair)
@limiter.limit("20/minute")
async def refresh(request: Request, body: RefreshRequest, session: DbSession) -> TokenPair:
    check = check_token(body.refresh_token, REFRESH)
    user = await get_user_by_email(session, check.subject) if check.ok else None
    if user is None:
        log.warning("Refresh rejected (expired=%s)", check.expired)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired refresh token"
        )
    return _issue(user)


@router.get("/me", response_model=AccountOut)
async def me(current_user: Annotated[User, Depends(get_current_user)]) -> AccountOut:
    return AccountOut.model_validate(current_user)
