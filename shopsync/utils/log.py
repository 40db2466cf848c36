"""Logging setup shared by the client components."""
import logging
from typing import Optional

from shopsync.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging for an application embedding the client.

    Args:
        level: Log level name (defaults to settings.log_level)
    """
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format=LOG_FORMAT,
    )


def mask_token(token: Optional[str]) -> str:
    """Shorten a bearer token for log output."""
    if not token:
        return "<none>"
    return token[:10] + "..."
