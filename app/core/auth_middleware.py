"""Authentication middleware for FastAPI."""

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import get_settings
from app.core.schemas_auth import AuthContext

logger = logging.getLogger(__name__)

# HTTP Bearer scheme for Authorization header
security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> Optional[AuthContext]:
    """
    Extract and validate the current user from the request.

    Supports two authentication methods:
    1. Supabase JWT tokens (Bearer auth) - for application users
    2. Admin API key (X-API-Key header) - for internal tools, optionally
       acting for the user named in X-User-Id

    Returns None if no valid auth is present (for optional auth endpoints).
    """
    admin_key = get_settings().ADMIN_API_KEY
    if x_api_key and admin_key and x_api_key == admin_key:
        logger.debug("Authenticated via admin API key")
        return AuthContext(user_id=x_user_id or "", token="api-key", is_admin=not x_user_id)

    # Fall back to Bearer token auth
    if not credentials:
        return None

    token = credentials.credentials

    try:
        from app.db.supabase_client import get_supabase

        # Validates the JWT signature and expiration
        auth_response = get_supabase().auth.get_user(token)

        if not auth_response or not auth_response.user:
            return None

        return AuthContext(user_id=str(auth_response.user.id), token=token)

    except Exception as e:
        logger.warning(f"Auth error: {e}")
        return None


async def require_auth(
    auth: Optional[AuthContext] = Depends(get_current_user),
) -> AuthContext:
    """Require authentication. Raises 401 if not authenticated."""
    if not auth:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return auth
