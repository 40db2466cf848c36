"""Errors raised by the commerce API client."""
from typing import Any, Optional


class CommerceApiError(Exception):
    """Non-2xx response or unusable body from the commerce API."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    @property
    def server_message(self) -> Optional[str]:
        """Human-readable message sent by the server, if any."""
        if isinstance(self.payload, dict):
            message = self.payload.get("message") or self.payload.get("error")
            if isinstance(message, str) and message.strip():
                return message
        return None


class AuthorizationError(CommerceApiError):
    """401: bad credentials on login, invalid or expired token elsewhere."""


class NotFoundError(CommerceApiError):
    """404."""


class ConflictError(CommerceApiError):
    """409: e.g. an account with this email already exists."""


class EndpointUnavailableError(CommerceApiError):
    """405/501: the server does not offer this operation."""


class NetworkError(CommerceApiError):
    """The server could not be reached or did not answer in time."""

    def __init__(self, message: str):
        super().__init__(message, status_code=None)


STATUS_ERRORS = {
    401: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
    405: EndpointUnavailableError,
    501: EndpointUnavailableError,
}


def error_for_status(status_code: int, message: str, payload: Any = None) -> CommerceApiError:
    error_cls = STATUS_ERRORS.get(status_code, CommerceApiError)
    return error_cls(message, status_code=status_code, payload=payload)
