"""
Access and refresh tokens: HS256 JWTs whose subject is the account email.

Clients tell an expired access token apart from a bad one (they refresh and
retry once on expiry), so check_token reports expiry separately.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt

from evm_server.config import get_settings

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenCheck:
    subject: Optional[str] = None
    expired: bool = False

    @property
    def ok(self) -> bool:
        return self.subject is not None


def _lifetime(token_type: str) -> timedelta:
    settings = get_settings()
    if token_type == ACCESS:
        return timedelta(minutes=settings.access_token_expire_minutes)
    return timedelta(days=settings.refresh_token_expire_days)


def issue_token(subject: str, token_type: str, expires_delta: Optional[timedelta] = None) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    claims = {
        "sub": subject,
        "type": token_type,
        "iat": now,
        "exp": now + (expires_delta or _lifetime(token_type)),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    return issue_token(subject, ACCESS, expires_delta)


def create_refresh_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    return issue_token(subject, REFRESH, expires_delta)


def check_token(token: str, token_type: str) -> TokenCheck:
    """
    Verify signature, expiry and type. expired is set only for a correctly
    signed token whose exp has passed; anything else unusable is plain invalid.
    """
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        return TokenCheck(expired=True)
    except JWTError:
        return TokenCheck()
    if claims.get("type") != token_type or not claims.get("sub"):
        return TokenCheck()
    return TokenCheck(subject=claims["sub"])
