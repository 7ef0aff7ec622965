#  HDR Backend - Auth Middleware
#
#  FastAPI dependencies for caller authentication.
#  get_current_user: validates the Supabase Bearer token, returns user dict.
#  verify_webhook_token: shared-secret check for provider callbacks.
#
#  Depends on: services/auth.py, container.py
#  Used by:    app.py, routes/*

import hmac
import logging

import jwt
from dependency_injector.wiring import inject, Provide
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from hdr_backend.container import Container
from hdr_backend.services.auth import TokenVerifier

logger = logging.getLogger("hdr.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


@inject
async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    verifier: TokenVerifier = Depends(Provide[Container.token_verifier]),
) -> dict:
    """Validate Bearer token and return user dict. Raises 401 on failure."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return verifier.identify(credentials.credentials)
    except jwt.PyJWTError as e:
        logger.info("Rejected bearer token: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def _presented_webhook_token(request: Request) -> str:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return header.strip() or request.headers.get("x-webhook-token", "").strip()


@inject
async def verify_webhook_token(
    request: Request,
    expected: str = Depends(Provide[Container.webhook_token]),
) -> None:
    """Constant-time comparison; an unset token rejects everything."""
    presented = _presented_webhook_token(request)
    if not expected or not presented or not hmac.compare_digest(presented.encode(), expected.encode()):
        logger.warning("Rejected webhook call from %s", request.client.host if request.client else "?")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid webhook token",
        )
