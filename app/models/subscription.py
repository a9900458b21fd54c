"""
Subscription Models
===================

SQLModel tables for plan templates and per-user subscription ledgers:
- SubscriptionPlan: admin-defined blueprint (name, price, grant).
- UserSubscription: the ledger. One live row per user, mutated in place.

Ledger balances:
    available_minutes  plan-cycle balance, consumed first
    extra_minutes      top-up balance, consumed after available_minutes
    total_minutes      entitlement; never decremented by metering
    seconds            live countdown; at rest equals
                       floor((available_minutes + extra_minutes) * 60)

``version`` is bumped on every write and used for compare-and-swap.

Phase: ST-02 - Persistent ledger
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

PLAN_FREE = "Free"
PLAN_PREMIUM = "Premium"
PLAN_SUPER = "Super"
PLAN_NAMES = (PLAN_FREE, PLAN_PREMIUM, PLAN_SUPER)

STATUS_ACTIVE = "Active"
STATUS_INACTIVE = "Inactive"
PLAN_STATUSES = (STATUS_ACTIVE, STATUS_INACTIVE)


class SubscriptionPlan(SQLModel, table=True):
    """Plan template copied into a ledger at purchase time."""

    __tablename__ = "subscription_plans"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        max_length=36,
    )
    name: str = Field(index=True, unique=True, max_length=32)
    status: str = Field(default=STATUS_ACTIVE, max_length=16)
    price: float = Field(default=0.0)
    billing_period: str = Field(default="monthly", max_length=16)
    voice_minutes: float = Field(default=0.0)
    features: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    description: str = Field(default="", max_length=1024)
    is_popular: bool = Field(default=False)
    currency: str = Field(default="EUR", max_length=8)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class UserSubscription(SQLModel, table=True):
    """Subscription ledger for one user."""

    __tablename__ = "user_subscriptions"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        max_length=36,
    )
    user_id: str = Field(index=True, max_length=36, foreign_key="users.id")
    plan_id: Optional[str] = Field(default=None, nullable=True, max_length=36)

    # Denormalized plan snapshot
    name: str = Field(default=PLAN_FREE, max_length=32)
    status: str = Field(default=STATUS_ACTIVE, max_length=16)
    price: float = Field(default=0.0)
    billing_period: str = Field(default="monthly", max_length=16)
    features: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    description: str = Field(default="", max_length=1024)
    is_popular: bool = Field(default=False)
    currency: str = Field(default="EUR", max_length=8)

    # Balances
    total_minutes: float = Field(default=0.0)
    available_minutes: float = Field(default=0.0)
    extra_minutes: float = Field(default=0.0)
    seconds: int = Field(default=0)
    recordings: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    # Billing cycle
    subscription_started_at: Optional[datetime] = Field(default=None, nullable=True)
    subscription_end_date: Optional[datetime] = Field(default=None, nullable=True)

    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
