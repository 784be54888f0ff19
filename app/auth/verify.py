"""
verify.py
---------
Purpose:
    JWT verification for the progression API.

Notes:
    - Tokens are issued by the identity provider; the user id is `sub`.
    - JWT_SECRET set: shared-secret verification (HS256 by default).
    - Otherwise keys are fetched from JWT_JWKS_URL and cached by PyJWKClient.
    - Provides `auth_dependency` and `current_user_id` for protected routes.
"""

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from app.config import settings

_security = HTTPBearer()
_jwk_client: PyJWKClient | None = None


def _signing_key(token: str):
    global _jwk_client
    if settings.JWT_SECRET:
        return settings.JWT_SECRET
    if not settings.JWT_JWKS_URL:
        raise RuntimeError("Either JWT_SECRET or JWT_JWKS_URL must be configured")
    if _jwk_client is None:
        _jwk_client = PyJWKClient(settings.JWT_JWKS_URL)
    return _jwk_client.get_signing_key_from_jwt(token).key


def verify_jwt(token: str) -> dict:
    try:
        decoded = jwt.decode(
            token,
            _signing_key(token),
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            options={"verify_exp": True, "require": ["sub"]},
        )
        return decoded
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def auth_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> dict:
    token = credentials.credentials
    return verify_jwt(token)


def current_user_id(claims: dict = Depends(auth_dependency)) -> str:
    return str(claims["sub"])
