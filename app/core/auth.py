"""
Shared-secret authorization for scheduler and webhook endpoints.
"""

import hmac
import logging
from typing import Optional

from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config.settings import settings

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme; missing headers are handled below
security = HTTPBearer(auto_error=False)


class AuthError(HTTPException):
    """Custom authentication error."""
    def __init__(self, detail: str = "Unauthorized"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


def secrets_match(expected: Optional[str], provided: Optional[str]) -> bool:
    """Constant-time comparison of two optional secrets."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode(), provided.encode())


async def verify_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> bool:
    """
    Check the scheduler's bearer token against CRON_SECRET.

    When no secret is configured every request is allowed and a warning is logged.

    Raises:
        AuthError: if a secret is configured and the token does not match
    """
    cron_secret = settings.cron_secret
    if not cron_secret:
        logger.warning("No CRON_SECRET configured - allowing request")
        return True

    token = credentials.credentials if credentials else None
    if not secrets_match(cron_secret, token):
        logger.warning("Unauthorized cron request attempt")
        raise AuthError()
    return True
