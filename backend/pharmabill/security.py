"""Security utilities for JWTs.

WHAT:
    JWT helpers used at the authentication boundary. The billing engine never
    sees raw tokens; `deps.get_current_user` decodes the token and hands a
    `User` (and from it a `Principal`) to everything downstream.

REFERENCES:
    - pharmabill/deps.py
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import jwt, JWTError

from pharmabill.utils.env import require_env


ALGORITHM = "HS256"
JWT_SECRET = require_env("JWT_SECRET")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "10080"))

logger = logging.getLogger(__name__)


def create_access_token(subject: str, expires_minutes: int = JWT_EXPIRES_MINUTES, extra_claims: Dict[str, Any] | None = None) -> str:
    """Create a signed JWT access token.

    Args:
        subject: Unique subject identifier (user email)
        expires_minutes: Token lifetime in minutes
        extra_claims: Optional claims to embed
    """
    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes)).timestamp()),
    }
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode a JWT and return its payload.

    Raises:
        JWTError: If the token is invalid or expired
    """
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError:
        logger.debug("[AUTH] Rejected invalid or expired token")
        raise
