from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    UNAUTHORIZED = "Unauthorized"
    INVALID_REQUEST = "InvalidRequest"
    NOT_FOUND = "NotFound"
    EXPIRED = "Expired"
    ALREADY_CONSUMED = "AlreadyConsumed"
    INVALID_STATE = "InvalidState"
    INVALID_SESSION_STATE = "InvalidSessionState"
    IDP_EXCHANGE_FAILED = "IdPExchangeFailed"
    INTERNAL = "InternalError"


HTTP_STATUS = {
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.EXPIRED: 404,
    ErrorKind.ALREADY_CONSUMED: 409,
    ErrorKind.INVALID_STATE: 400,
    ErrorKind.INVALID_SESSION_STATE: 409,
    ErrorKind.IDP_EXCHANGE_FAILED: 502,
    ErrorKind.INTERNAL: 500,
}


class MediatorError(Exception):
    """
    The only error type that crosses the mediator boundary.

    `kind` selects the HTTP status at the boundary; `message` is safe to show
    to the caller and must never carry token material or raw IdP output.
    """
    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def status_code(self) -> int:
        return HTTP_STATUS.get(self.kind, 500)

    def to_body(self) -> dict:
        return {"error": self.kind.value, "message": self.message}

    def __repr__(self) -> str:
        return f"MediatorError(kind={self.kind.value!r}, message={self.message!r})"


class IdPError(Exception):
    """Raised by the IdP client when the provider rejects a request or is unreachable."""
    def __init__(self, reason: str, status_code: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


def not_found(message: str = "No such code or session, or it has expired.") -> MediatorError:
    return MediatorError(ErrorKind.NOT_FOUND, message)


def unauthorized() -> MediatorError:
    return MediatorError(
        ErrorKind.UNAUTHORIZED,
        "You are not authorized to access this URL. Make sure your client certificate is set up properly.",
    )
