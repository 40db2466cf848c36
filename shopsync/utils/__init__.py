"""Utility functions for the client."""
from .events import CartUpdate, ChangeReason, Event, EventChannel, SessionChange
from .log import configure_logging, mask_token
from .token import TokenIdentity, decode_token_identity

__all__ = [
    "CartUpdate",
    "Event",
    "EventChannel",
    "ChangeReason",
    "SessionChange",
    "configure_logging",
    "mask_token",
    "TokenIdentity",
    "decode_token_identity"
]
