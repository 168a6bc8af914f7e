"""
FastAPI Dependencies - Service-to-service authentication.

Callers (chat pipeline, payment webhook, cron runner) present the shared
service token as a Bearer credential.
"""

import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from pointledger.config import settings

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def require_service_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """
    Reject requests without the configured service token.

    Usage:
        @router.post("/v1/points/users/{user_id}/spend")
        async def spend(_: None = Depends(require_service_token)):
            ...
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing service token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    expected = settings.service_token
    if not expected or not secrets.compare_digest(credentials.credentials, expected):
        logger.warning("service_token_rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid service token",
            headers={"WWW-Authenticate": "Bearer"},
        )
