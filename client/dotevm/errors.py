"""Error taxonomy and the Result type returned by store and engine operations."""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class EvmError(Exception):
    """Base class for all dotevm errors."""


class ValidationError(EvmError):
    """Malformed input: bad name, bad selection, ambiguous token prefix."""


class NotFoundError(EvmError):
    """Referenced project, file, version or user does not exist."""


class IntegrityError(EvmError):
    """Ciphertext failed authentication (tampered data or wrong key)."""


class ConnectivityError(EvmError):
    """Remote store unreachable or timed out. Callers queue a pending operation."""


class AuthExpiredError(EvmError):
    """Access token expired and refresh failed; the user must log in again."""


class ConstraintError(EvmError):
    """Uniqueness violated (duplicate project name, file name, user)."""


class StoreError(EvmError):
    """Local database failure that is not a domain error."""


class RemoteError(EvmError):
    """Remote store answered with an error that is not an auth failure."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or an error, never both."""

    value: Optional[T] = None
    error: Optional[EvmError] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: EvmError) -> "Result[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
