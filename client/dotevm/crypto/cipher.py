"""
Per-user content cipher.

A user's key is derived from (email, salt) with PBKDF2-HMAC-SHA256 and never
stored. Content is sealed with AES-256-GCM under a fresh 96-bit IV; the email
is bound as associated data so ciphertext cannot be replayed under another
identity. Ciphertext, IV and tag are carried as hex strings, which is how the
local store and the remote protocol hold them.
"""

import functools
import logging
import os
from typing import NamedTuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from dotevm.errors import IntegrityError

log = logging.getLogger(__name__)

KDF_ITERATIONS = 100_000
KEY_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16
SALT_BYTES = 32


class Sealed(NamedTuple):
    """Hex-encoded output of encrypt()."""

    ciphertext: str
    iv: str
    tag: str


def generate_salt() -> str:
    """Random per-user salt (hex). Created once per user, never rotated."""
    return os.urandom(SALT_BYTES).hex()


@functools.lru_cache(maxsize=32)
def derive_key(email: str, salt: str) -> bytes:
    """Deterministic 256-bit key for (email, salt)."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt.encode("utf-8"),
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(email.encode("utf-8"))


def encrypt(plaintext: str, email: str, salt: str) -> Sealed:
    """Encrypt plaintext for this user. A new IV is drawn on every call."""
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(derive_key(email, salt)).encrypt(
        iv, plaintext.encode("utf-8"), email.encode("utf-8")
    )
    # cryptography appends the tag to the ciphertext
    body, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return Sealed(ciphertext=body.hex(), iv=iv.hex(), tag=tag.hex())


def decrypt(ciphertext: str, iv: str, tag: str, email: str, salt: str) -> str:
    """Decrypt and authenticate. Raises IntegrityError on any mismatch."""
    try:
        nonce = bytes.fromhex(iv)
        data = bytes.fromhex(ciphertext) + bytes.fromhex(tag)
    except (TypeError, ValueError) as e:
        raise IntegrityError(f"Malformed ciphertext: {e}") from e
    if len(nonce) != IV_BYTES or len(data) < TAG_BYTES:
        raise IntegrityError("Malformed ciphertext: bad IV or tag length")
    try:
        plain = AESGCM(derive_key(email, salt)).decrypt(nonce, data, email.encode("utf-8"))
    except InvalidTag as e:
        log.debug("Authentication tag mismatch for %s", email)
        raise IntegrityError("Content failed authentication (tampered or wrong key)") from e
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as e:
        raise IntegrityError("Decrypted content is not valid UTF-8") from e


class UserCipher:
    """Cipher bound to one user's (email, salt)."""

    def __init__(self, email: str, salt: str) -> None:
        self.email = email
        self._salt = salt

    def encrypt(self, plaintext: str) -> Sealed:
        return encrypt(plaintext, self.email, self._salt)

    def decrypt(self, ciphertext: str, iv: str, tag: str) -> str:
        return decrypt(ciphertext, iv, tag, self.email, self._salt)
