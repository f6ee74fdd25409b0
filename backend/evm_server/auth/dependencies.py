"""Bearer-token dependency resolving the calling user."""

import logging
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from evm_server.auth.jwt import ACCESS, check_token
from evm_server.db.session import get_db
from evm_server.users.models import User
from evm_server.users.service import get_user_by_email

security = HTTPBearer(auto_error=False)
log = logging.getLogger(__name__)

# Clients refresh and retry exactly once when they see this detail
TOKEN_EXPIRED_DETAIL = "Token expired"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """401 with "Token expired" for an expired access token, other 401s for anything else."""
    if not credentials:
        raise _unauthorized("Not authenticated")
    check = check_token(credentials.credentials, ACCESS)
    if check.expired:
        log.debug("Expired access token")
        raise _unauthorized(TOKEN_EXPIRED_DETAIL)
    if not check.ok:
        log.debug("Invalid access token")
        raise _unauthorized("Invalid token")
    user = await get_user_by_email(session, check.subject)
    if user is None:
        log.warning("Token for unknown account %s", check.subject)
        raise _unauthorized("User not found")
    return user
