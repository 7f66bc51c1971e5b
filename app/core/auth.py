"""Request identity and admin authentication dependencies.

End-user authentication happens upstream; the gateway forwards the
authenticated user's id in X-User-ID. Admin endpoints require a bearer
ADMIN_API_KEY.
"""

import hmac
import logging

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

# Optional bearer token scheme - won't reject missing tokens,
# allowing the dependency to return a clear 401 instead of 403.
_bearer_scheme = HTTPBearer(auto_error=False)


async def current_user_id(x_user_id: int | None = Header(default=None)) -> int:
    """The calling user's id, as forwarded by the authenticating gateway."""
    if x_user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-ID header required",
        )
    return x_user_id


async def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> str:
    """
    Dependency that enforces admin API key authentication.

    Usage:
        @router.post("/recompute/{user_id}", dependencies=[Depends(require_admin)])
        async def force_recompute(user_id: int):
            ...

    The client must send:
        Authorization: Bearer <ADMIN_API_KEY>

    Returns the validated API key on success.
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin authentication not configured",
        )

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin API key required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Constant-time comparison
    if not hmac.compare_digest(
        credentials.credentials.encode("utf-8"),
        settings.admin_api_key.encode("utf-8"),
    ):
        client_ip = request.client.host if request.client else "unknown"
        logger.warning("Failed admin auth attempt from %s", client_ip)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return credentials.credentials
