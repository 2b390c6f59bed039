"""
Authentication dependency for FastAPI endpoints.

The billing API is called by trusted backends only: requests carry the
shared service key (``API_KEY``) as a Bearer token.
"""

import secrets
from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()


class ServiceClient(BaseModel):
    """An authenticated API caller."""

    authenticated: bool = True


async def require_service_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> ServiceClient:
    """
    FastAPI dependency that checks the Bearer token against the service key.

    Raises:
        HTTPException 503: No service key configured.
        HTTPException 401: Token does not match.
    """
    api_key = getattr(request.app.state, "api_key", None)
    if not api_key:
        raise HTTPException(status_code=503, detail="Billing API key is not configured")

    if not secrets.compare_digest(credentials.credentials.encode(), api_key.encode()):
        logger.warning("auth_service_key_rejected")
        raise HTTPException(status_code=401, detail="Invalid service key")
    return ServiceClient()


AuthenticatedClient = Annotated[ServiceClient, Depends(require_service_key)]
