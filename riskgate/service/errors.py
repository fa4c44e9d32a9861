from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds raised by the identity services.

    Each kind carries the HTTP status and the stable error code emitted in the
    response envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    VALIDATION = "validation_error"
    AUTHENTICATION = "unauthorized"
    AUTHORIZATION = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INTERNAL = "server_error"

    @property
    def status_code(self) -> int:
        return _KIND_STATUS[self]


_KIND_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.AUTHORIZATION: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INTERNAL: 500,
}


class ServiceError(Exception):
    """A tagged service failure: ``kind`` decides status and code, nothing else does."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    @property
    def error_code(self) -> str:
        return self.kind.value

    def __repr__(self) -> str:
        return f"ServiceError(kind={self.kind.name}, message={self.message!r})"


def validation_error(message: str, details: Optional[Any] = None) -> ServiceError:
    return ServiceError(ErrorKind.VALIDATION, message, details=details)


def authentication_error(message: str = "Invalid credentials") -> ServiceError:
    return ServiceError(ErrorKind.AUTHENTICATION, message)


def authorization_error(message: str) -> ServiceError:
    return ServiceError(ErrorKind.AUTHORIZATION, message)


def not_found(message: str) -> ServiceError:
    return ServiceError(ErrorKind.NOT_FOUND, message)


def conflict(message: str, details: Optional[Any] = None) -> ServiceError:
    return ServiceError(ErrorKind.CONFLICT, message, details=details)


__all__ = [
    "ErrorKind",
    "ServiceError",
    "validation_error",
    "authentication_error",
    "authorization_error",
    "not_found",
    "conflict",
]
