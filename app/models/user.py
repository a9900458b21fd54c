"""
User Model
==========

SQLModel table for SelfTalk accounts.

Password is stored as a bcrypt hash. ``current_subscription_id`` points at
the user's live ledger record and is only ever written by the subscription
lifecycle service.

Phase: ST-02 - Persistent ledger
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlmodel import Field, SQLModel

ROLE_USER = "user"
ROLE_ADMIN = "admin"


class User(SQLModel, table=True):
    """Registered SelfTalk account."""

    __tablename__ = "users"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        max_length=36,
    )
    username: str = Field(max_length=255)
    email: str = Field(index=True, unique=True, max_length=255)
    password_hash: str = Field(max_length=255)
    role: str = Field(default=ROLE_USER, max_length=50)
    is_suspended: bool = Field(default=False)
    # No FK constraint: users <-> user_subscriptions reference each other.
    current_subscription_id: Optional[str] = Field(default=None, nullable=True, index=True, max_length=36)
    voice_id: Optional[str] = Field(default=None, nullable=True, max_length=128)
    model_id: Optional[str] = Field(default=None, nullable=True, max_length=128)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
