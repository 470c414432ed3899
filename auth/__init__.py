"""Caller identity from bearer tokens.

Tokens are issued by the account service and signed with the shared
``jwt_secret``; the ``sub`` claim holds the numeric user id. This module
only verifies them.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt

from config import settings_conf

logger = logging.getLogger(__name__)

class AuthError(Exception):
    """Base exception for authentication errors."""
    pass

class SessionExpiredError(AuthError):
    """Raised when a token has expired."""
    pass

def create_token(user_id: int, expires_in: timedelta = timedelta(hours=1), secret: Optional[str] = None) -> str:
    """Sign a token for a user id, as the account service does."""
    return jwt.encode(
        {
            'sub': str(user_id),
            'exp': datetime.now(timezone.utc) + expires_in
        },
        secret or settings_conf['jwt_secret'],
        algorithm=settings_conf['jwt_algorithm']
    )

def verify_token(token: str, secret: Optional[str] = None) -> int:
    """Verify a token and return the user id it was issued for.

    Raises:
        SessionExpiredError: If the token has expired
        AuthError: If the token is invalid or has no numeric subject
    """
    try:
        payload = jwt.decode(
            token,
            secret or settings_conf['jwt_secret'],
            algorithms=[settings_conf['jwt_algorithm']]
        )
    except jwt.ExpiredSignatureError:
        raise SessionExpiredError("Session has expired")
    except jwt.JWTError as e:
        raise AuthError(f"Invalid token: {str(e)}")

    try:
        return int(payload['sub'])
    except (KeyError, TypeError, ValueError):
        raise AuthError("Token has no valid subject")

auth_scheme = HTTPBearer(
    auto_error=True,  # Return 401 automatically if token is missing
    description="JWT Bearer token required"
)

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)
) -> int:
    """FastAPI dependency for getting the authenticated user id.

    Raises:
        HTTPException: If authentication fails
    """
    try:
        return verify_token(credentials.credentials)
    except SessionExpiredError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session has expired"
        )
    except AuthError as e:
        logger.info(f"Rejected token: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e)
        )

__all__ = [
    'get_current_user',
    'create_token',
    'verify_token',
    'AuthError',
    'SessionExpiredError'
]
