"""
Caller identity from the authentication provider's access tokens.

The provider signs the tokens; this service only verifies them and uses
the ``sub`` claim as the user id.
"""
from pathlib import Path
from typing import Any, Dict, Optional

import jwt
import structlog
from fastapi import HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import get_settings

_bearer = HTTPBearer(auto_error=False)
_verification_key: Optional[str] = None


def _load_key() -> Optional[str]:
    """Verification key from settings: inline value first, then the key file (cached)."""
    global _verification_key
    if _verification_key is None:
        settings = get_settings()
        if settings.jwt_public_key:
            _verification_key = settings.jwt_public_key
        elif settings.jwt_public_key_path:
            _verification_key = Path(settings.jwt_public_key_path).read_text()
    return _verification_key


def reset_key() -> None:
    """Forget the cached key (used when settings change)."""
    global _verification_key
    _verification_key = None


def verify_token(token: str) -> Dict[str, Any]:
    """Verify a provider access token and return its claims.

    Raises:
        jwt.InvalidTokenError: bad signature, expired, wrong issuer or
            audience, or no subject.
    """
    settings = get_settings()
    key = _load_key()
    if key is None:
        raise RuntimeError("No token verification key configured")

    try:
        payload: Dict[str, Any] = jwt.decode(
            token,
            key,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise jwt.InvalidTokenError("Token has expired") from None

    if not payload.get("sub"):
        raise jwt.InvalidTokenError("Token has no subject")
    return payload


async def current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(_bearer),
) -> str:
    """Authenticated user id for write routes. Raises 401 without a valid token."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = verify_token(credentials.credentials)
    except RuntimeError as e:
        raise HTTPException(status_code=500, detail="Authentication not configured") from e
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e

    user_id = str(payload["sub"])
    structlog.contextvars.bind_contextvars(user_id=user_id)
    return user_id
