"""Typed results returned by services instead of raising across module seams."""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Classes of failure a service can report."""

    VALIDATION = "validation"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    STATE_CONFLICT = "state_conflict"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    INTERNAL_INVARIANT = "internal_invariant"


HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.STATE_CONFLICT: 400,
    ErrorKind.PROVIDER_UNAVAILABLE: 503,
    ErrorKind.INTERNAL_INVARIANT: 500,
}


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    current_status: str | None = None

    @property
    def ok(self) -> bool:
        return False

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.kind]
