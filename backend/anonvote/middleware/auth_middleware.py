"""
AnonVote Authentication Middleware
JWT validation and admin checks for FastAPI

Sessions are issued by the community web app; this service only checks
them. The token's "sub" claim is the member's external user id.
"""

import logging
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from anonvote.config import settings
from anonvote.eligibility import get_eligibility_source
from anonvote.schemas import CurrentUser

logger = logging.getLogger(__name__)

# ============================================================================
# Security Schemes
# ============================================================================
security = HTTPBearer(auto_error=False)


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode a session token; None when invalid or expired"""
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.warning("Token has expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {type(e).__name__}")
        return None


# ============================================================================
# Token Validation Dependencies
# ============================================================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
) -> CurrentUser:
    """Dependency to get current authenticated user from JWT token"""
    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(credentials.credentials)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return CurrentUser(id=str(user_id))


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
) -> Optional[CurrentUser]:
    """Optional authentication - returns user if token provided, None otherwise"""
    if not credentials:
        return None
    try:
        return await get_current_user(credentials)
    except HTTPException:
        return None


# ============================================================================
# Role Checks
# ============================================================================

async def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Require one of the configured admin roles"""
    eligibility = get_eligibility_source()
    if not await eligibility.has_any_role(current_user.id, settings.ADMIN_ROLE_IDS):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return current_user
