"""
Access Token Authentication
===========================

HS256 JWT access tokens for the REST API and the talk WebSocket.

Token claims:
    uid   user id
    jti   unique token id (revocation key)
    type  always "access"
    exp   expiry (SELFTALK_ACCESS_TOKEN_TTL_DAYS)

Validated tokens are cached for SELFTALK_TOKEN_CACHE_TTL seconds.
The talk WebSocket bypasses the cache at connect, so a suspension takes
effect on the next connection.
Logout puts the jti on an in-memory revocation list that lives as long as
the token itself could.

REST:      Authorization: Bearer <token>
WebSocket: ?token=<token>
"""

import logging
from datetime import timedelta
from typing import Optional
from uuid import uuid4

from cachetools import TTLCache
from fastapi import HTTPException, Request, WebSocket, status
from jose import jwt
from jose.exceptions import JWTError
from pydantic import BaseModel

from app.config import settings
from app.core.async_utils import run_sync
from app.core.database import get_session_context
from app.core.errors import SelfTalkError
from app.core.timeutil import utcnow
from app.models.user import ROLE_ADMIN, User

logger = logging.getLogger(__name__)

TOKEN_TYPE_ACCESS = "access"


class AuthenticatedUser(BaseModel):
    """Identity resolved from a valid access token."""

    user_id: str
    email: str
    role: str
    is_suspended: bool = False
    token_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


# token -> AuthenticatedUser
token_cache = TTLCache(maxsize=10000, ttl=settings.token_cache_ttl)
# jti -> True, kept until the token would have expired anyway
revoked_tokens = TTLCache(maxsize=100000, ttl=settings.access_token_ttl_days * 24 * 3600)


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = utcnow() + (expires_delta or timedelta(days=settings.access_token_ttl_days))
    claims = {
        "uid": user_id,
        "jti": uuid4().hex,
        "type": TOKEN_TYPE_ACCESS,
        "exp": expire,
    }
    return jwt.encode(claims, settings.get_access_token_secret(), algorithm=settings.access_token_algorithm)


def decode_access_token(token: str) -> Optional[dict]:
    """Verify signature, expiry, type and revocation. Returns claims or None."""
    try:
        claims = jwt.decode(token, settings.get_access_token_secret(), algorithms=[settings.access_token_algorithm])
    except JWTError:
        return None
    if claims.get("type") != TOKEN_TYPE_ACCESS or not claims.get("uid"):
        return None
    if claims.get("jti") in revoked_tokens:
        return None
    return claims


def revoke_access_token(token: str) -> bool:
    """Logout: refuse this token from now on. Returns False for an invalid token."""
    claims = decode_access_token(token)
    if claims is None:
        return False
    revoked_tokens[claims["jti"]] = True
    token_cache.pop(token, None)
    logger.info("access_token_revoked", extra={"user_id": claims["uid"]})
    return True


def resolve_token(token: str, use_cache: bool = True) -> Optional[AuthenticatedUser]:
    """Token -> AuthenticatedUser, or None if invalid or the user is gone.

    With ``use_cache=False`` the user row is re-read (suspension included)
    and the cache entry refreshed.
    """
    if use_cache:
        cached = token_cache.get(token)
        if cached is not None:
            return cached

    claims = decode_access_token(token)
    if claims is None:
        return None

    with get_session_context() as db:
        user = db.get(User, claims["uid"])
    if user is None:
        return None

    authenticated = AuthenticatedUser(
        user_id=user.id,
        email=user.email,
        role=user.role,
        is_suspended=user.is_suspended,
        token_id=claims.get("jti"),
    )
    token_cache[token] = authenticated
    return authenticated


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(request: Request) -> AuthenticatedUser:
    """FastAPI dependency: require a valid bearer token."""
    token = _bearer_token(request)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = resolve_token(token)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if user.is_suspended:
        raise SelfTalkError("ST-AUTH-003", detail=f"user {user.user_id} is suspended")
    return user


def get_bearer_token(request: Request) -> Optional[str]:
    return _bearer_token(request)


async def require_admin(request: Request) -> AuthenticatedUser:
    """FastAPI dependency: bearer token of an admin account."""
    user = await get_current_user(request)
    if not user.is_admin:
        raise SelfTalkError("ST-AUTH-004", detail=f"user {user.user_id} is not an admin")
    return user


async def get_current_user_ws(websocket: WebSocket) -> Optional[AuthenticatedUser]:
    """WebSocket variant of get_current_user.

    Reads the token from the ?token= query parameter and re-reads the
    account, skipping the token cache. Returns None if auth fails; the
    caller must close the WebSocket.
    """
    token = websocket.query_params.get("token")
    if not token:
        return None
    return await run_sync(resolve_token, token, False)
