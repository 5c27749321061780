"""
Management API auth - verifies Bearer JWTs issued by the platform's auth service.
Tokens are HS256 and carry the user id as `user_id`, `sub`, or `user.id`.
"""
import logging
import uuid
from typing import Optional

import jwt as pyjwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from hookrelay.config import get_settings

logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer(auto_error=False)


def _extract_user_id(payload: dict) -> Optional[str]:
    user_id = payload.get("user_id") or payload.get("sub")
    if not user_id and isinstance(payload.get("user"), dict):
        user_id = payload["user"].get("id")
    return user_id


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> uuid.UUID:
    """Dependency to extract and verify the caller's user id from the Bearer token."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Authentication required")

    settings = get_settings()
    if not settings.jwt_secret:
        logger.error("JWT_SECRET not configured - rejecting management request")
        raise HTTPException(status_code=401, detail="Authentication unavailable")

    try:
        payload = pyjwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=["HS256"],
        )
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = _extract_user_id(payload)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    try:
        return uuid.UUID(str(user_id))
    except (ValueError, AttributeError):
        raise HTTPException(status_code=401, detail="Invalid token payload")
