"""
Account Service: Registration & Credentials
===========================================

PURPOSE:
    Creates SelfTalk accounts (each new account gets a Free ledger) and
    verifies login credentials. Passwords are bcrypt hashes over a SHA-256
    pre-hash, so passwords longer than bcrypt's 72-byte limit still count
    in full.

PHASE: ST-07 - Accounts
"""

from __future__ import annotations

import base64
import hashlib
import logging
from typing import Callable, Optional

import bcrypt
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from app.core.database import get_session_context
from app.core.errors import SelfTalkError
from app.core.timeutil import utcnow
from app.models.user import ROLE_USER, User
from app.services.subscription_service import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)


def _prepare_password(password: str) -> bytes:
    """Pre-hash password with SHA-256 to handle bcrypt's 72-byte limit."""
    return base64.b64encode(hashlib.sha256(password.encode()).digest())


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_prepare_password(password), bcrypt.gensalt()).decode()


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_prepare_password(password), password_hash.encode())
    except ValueError:
        # Malformed stored hash
        return False


class AccountService:
    """User accounts and credential checks."""

    def __init__(
        self,
        lifecycle: SubscriptionLifecycleManager,
        session_factory: Callable = get_session_context,
    ) -> None:
        self._lifecycle = lifecycle
        self._session_factory = session_factory

    def register(self, username: str, email: str, password: str, role: str = ROLE_USER) -> User:
        """Create the account and its Free subscription ledger."""
        normalized_email = email.strip().lower()
        user = User(
            username=username.strip(),
            email=normalized_email,
            password_hash=hash_password(password),
            role=role,
        )
        with self._session_factory() as db:
            if db.exec(select(User).where(User.email == normalized_email)).first() is not None:
                raise SelfTalkError("ST-AUTH-002", detail=f"email {normalized_email} already registered")
            db.add(user)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise SelfTalkError("ST-AUTH-002", detail=f"email {normalized_email} already registered") from exc

        subscription = self._lifecycle.create_free_subscription(user.id)
        user.current_subscription_id = subscription.id
        logger.info("user_registered", extra={"user_id": user.id, "subscription_id": subscription.id})
        return user

    def authenticate(self, email: str, password: str) -> User:
        """Return the user for valid credentials; raises ST-AUTH-001 / ST-AUTH-003."""
        user = self.get_by_email(email)
        if user is None or not verify_password(password, user.password_hash):
            raise SelfTalkError("ST-AUTH-001", detail="invalid email or password")
        if user.is_suspended:
            raise SelfTalkError("ST-AUTH-003", detail=f"user {user.id} is suspended")
        return user

    def get_by_email(self, email: str) -> Optional[User]:
        with self._session_factory() as db:
            return db.exec(select(User).where(User.email == email.strip().lower())).first()

    def get_user(self, user_id: str) -> Optional[User]:
        with self._session_factory() as db:
            return db.get(User, user_id)

    def update_voice_model(self, user_id: str, voice_id: Optional[str], model_id: Optional[str]) -> User:
        with self._session_factory() as db:
            user = db.get(User, user_id)
            if user is None:
                raise SelfTalkError("ST-USR-001", detail=f"user {user_id} not found")
            if voice_id is not None:
                user.voice_id = voice_id
            if model_id is not None:
                user.model_id = model_id
            user.updated_at = utcnow()
            db.add(user)
            db.commit()
        return user
