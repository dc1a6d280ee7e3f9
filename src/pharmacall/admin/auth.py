"""
Bearer-key guard for the admin API.
"""

import hmac
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pharmacall.config import Settings
from pharmacall.dependencies import get_app_settings
from pharmacall.shared.logging import get_logger

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def require_admin(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> None:
    """Reject the request unless it carries ``Authorization: Bearer <ADMIN_API_KEY>``.

    Raises:
        HTTPException: 503 when no admin key is configured, 401 otherwise.
    """
    expected = settings.admin_api_key
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "ADMIN_DISABLED", "message": "Admin API is not configured"},
        )

    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("Rejected admin request with invalid credentials")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "INVALID_ADMIN_KEY", "message": "Invalid or missing admin key"},
            headers={"WWW-Authenticate": "Bearer"},
        )
