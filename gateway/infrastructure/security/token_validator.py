"""
Shared-secret validation for websocket peers and REST callers
"""

from typing import Optional
import hmac
import structlog

logger = structlog.get_logger(__name__)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Pull the token out of an ``Authorization: Bearer ...`` header"""

    if not authorization:
        return None
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return authorization.strip()


def verify_token(token: Optional[str], secret_token: str) -> bool:
    """
    Check a presented token against the gateway secret

    Args:
        token: Token presented by the caller
        secret_token: Configured gateway secret; an empty secret disables the check

    Returns:
        True if the caller may proceed
    """

    if not secret_token:
        return True

    if not token:
        logger.warning("Rejected request without token")
        return False

    if not hmac.compare_digest(token.encode(), secret_token.encode()):
        logger.warning("Rejected request with invalid token",
                       token_prefix=token[:4] if len(token) > 4 else "")
        return False

    return True
