"""Authentication session management."""
from .manager import ErrorKind, SessionManager, profile_user_id

__all__ = [
    "ErrorKind",
    "SessionManager",
    "profile_user_id"
]
