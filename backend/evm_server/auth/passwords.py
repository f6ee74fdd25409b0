"""Account password hashes (bcrypt via passlib)."""

from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# bcrypt only looks at the first 72 bytes
_BCRYPT_MAX_BYTES = 72


def _clip(password: str) -> str:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES].decode("utf-8", errors="ignore")


def hash_password(password: str) -> str:
    return pwd_context.hash(_clip(password))


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(_clip(plain), hashed)
