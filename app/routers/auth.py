"""
Auth Router: Register, Login, Logout
====================================

    POST /api/auth/register  create account (+ Free subscription ledger)
    POST /api/auth/login     email/password -> access token
    POST /api/auth/logout    revoke the presented access token
    GET  /api/auth/me        current user info

Phase: ST-07 - Accounts
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from app.auth.access_tokens import (
    AuthenticatedUser,
    create_access_token,
    get_bearer_token,
    get_current_user,
    revoke_access_token,
)
from app.config import settings
from app.services.account_service import AccountService

logger = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Rate limiting for login (5 attempts per IP per 5 minutes)
# ---------------------------------------------------------------------------
_login_attempts: dict[str, list[float]] = {}
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # 5 minutes


def _check_login_rate_limit(client_ip: str) -> None:
    """Rate limit login endpoint to 5 attempts per IP per 5 minutes."""
    now = time.time()
    attempts = _login_attempts.get(client_ip, [])
    attempts = [t for t in attempts if now - t < _LOGIN_RATE_WINDOW]
    if len(attempts) >= _LOGIN_RATE_LIMIT:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Try again later.",
            headers={"Retry-After": str(_LOGIN_RATE_WINDOW)},
        )
    attempts.append(now)
    _login_attempts[client_ip] = attempts


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(..., min_length=8, max_length=512)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=512)


class UserInfo(BaseModel):
    user_id: str
    username: str
    email: str
    role: str
    current_subscription_id: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in_days: int
    user: UserInfo


def get_account_service(request: Request) -> AccountService:
    return request.app.state.account_service


def _user_info(user) -> UserInfo:
    return UserInfo(
        user_id=user.id,
        username=user.username,
        email=user.email,
        role=user.role,
        current_subscription_id=user.current_subscription_id,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an account",
    description="Creates the user with a Free subscription and returns an access token.",
)
async def register(body: RegisterRequest, accounts: AccountService = Depends(get_account_service)):
    user = accounts.register(body.username, body.email, body.password)
    return TokenResponse(
        access_token=create_access_token(user.id),
        expires_in_days=settings.access_token_ttl_days,
        user=_user_info(user),
    )


@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Login with email/password",
)
async def login(
    body: LoginRequest,
    request: Request,
    accounts: AccountService = Depends(get_account_service),
):
    _check_login_rate_limit(request.client.host if request.client else "unknown")

    user = accounts.authenticate(body.email, body.password)
    logger.info("user_logged_in", extra={"user_id": user.id})
    return TokenResponse(
        access_token=create_access_token(user.id),
        expires_in_days=settings.access_token_ttl_days,
        user=_user_info(user),
    )


@router.post("/logout", summary="Revoke the current access token")
async def logout(request: Request, _user: AuthenticatedUser = Depends(get_current_user)):
    revoke_access_token(get_bearer_token(request))
    return {"status": "logged_out"}


@router.get("/me", response_model=UserInfo, summary="Current user info")
async def me(
    user: AuthenticatedUser = Depends(get_current_user),
    accounts: AccountService = Depends(get_account_service),
):
    record = accounts.get_user(user.user_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return _user_info(record)
