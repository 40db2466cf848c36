"""Commerce API client."""
from .client import CommerceApiClient
from .errors import (
    AuthorizationError,
    CommerceApiError,
    ConflictError,
    EndpointUnavailableError,
    NetworkError,
    NotFoundError,
)

__all__ = [
    "CommerceApiClient",
    "AuthorizationError",
    "CommerceApiError",
    "ConflictError",
    "EndpointUnavailableError",
    "NetworkError",
    "NotFoundError"
]
