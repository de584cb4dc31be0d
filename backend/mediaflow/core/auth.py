"""
Authentication dependencies for FastAPI.

The admin surface (stuck-item listing, recovery, restart, stats) is
guarded by one shared operator key sent as a bearer token:

    Authorization: Bearer <ADMIN_API_KEY>

Usage in routes:
----------------
router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin_key)])

With ADMIN_API_KEY unset the admin routes answer 503, so a deployment
that forgot to configure the key is closed rather than open.
"""

import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mediaflow.core.config import settings

# auto_error=False: we answer 401 ourselves (HTTPBearer would send 403)
bearer_scheme = HTTPBearer(auto_error=False)


async def require_admin_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """
    Dependency that rejects requests without the operator key.

    Raises:
        HTTPException 503: admin API not configured
        HTTPException 401: missing or wrong key
    """
    if not settings.ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is disabled (ADMIN_API_KEY not configured)",
        )

    # compare_digest: constant time, no early exit on the first wrong byte
    if credentials is None or not secrets.compare_digest(
        credentials.credentials.encode(),
        settings.ADMIN_API_KEY.encode(),
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
