"""Request and response bodies for the auth routes."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

MIN_PASSWORD_LENGTH = 8


class Credentials(BaseModel):
    email: EmailStr
    password: str


class UserRegister(Credentials):
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)
    # hex salt from the client's key derivation; generated server-side when absent
    encryption_salt: Optional[str] = Field(default=None, max_length=128, pattern=r"^[0-9a-fA-F]+$")


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenPair(BaseModel):
    """Tokens plus the salt the client needs to decrypt this account's content."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    encryption_salt: Optional[str] = None


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    email: str
    encryption_salt: Optional[str] = None
    created_at: datetime
