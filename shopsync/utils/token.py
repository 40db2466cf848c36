"""Identity fallback decoded from a bearer token's payload.

The payload is read without verifying the signature. The result is only good
enough to show who is signed in while the profile endpoint is unreachable; it
must never be used to choose whose server cart to write to.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import jwt

logger = logging.getLogger(__name__)

USER_ID_CLAIMS = ("id", "_id", "userId", "user_id", "sub")


@dataclass(frozen=True)
class TokenIdentity:
    user_id: str
    role: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


def decode_token_identity(token: Optional[str]) -> Optional[TokenIdentity]:
    """
    Derive a minimal identity from a token payload.

    Args:
        token: Bearer token (JWT)

    Returns:
        TokenIdentity, or None if the token is missing, malformed or carries no user id
    """
    if not token:
        return None
    try:
        payload = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError as e:
        logger.warning(f"[TOKEN] Could not decode token payload: {e}")
        return None

    # Some backends nest the claims under "user"
    claims = payload.get("user") if isinstance(payload.get("user"), dict) else payload

    user_id = None
    for claim in USER_ID_CLAIMS:
        if claims.get(claim):
            user_id = str(claims[claim])
            break
    if user_id is None:
        logger.warning("[TOKEN] Token payload has no user id claim")
        return None

    return TokenIdentity(
        user_id=user_id,
        role=claims.get("role"),
        email=claims.get("email"),
        name=claims.get("name"),
    )
