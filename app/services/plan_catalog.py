"""
Plan Catalog: Subscription Plan Templates
=========================================

PURPOSE:
    Seeds, lists and edits the admin-defined plan templates (Free, Premium,
    Super). Templates are copied into a user's ledger at purchase time, so
    editing one never changes a live ledger.

PHASE: ST-03 - Subscriptions
"""

from __future__ import annotations

import logging
import math
from typing import Any, Callable, ContextManager, Dict, List, Optional

from sqlmodel import Session, select

from app.core.database import get_session_context
from app.core.errors import SelfTalkError
from app.core.timeutil import utcnow
from app.models.subscription import (
    PLAN_FREE,
    PLAN_PREMIUM,
    PLAN_STATUSES,
    PLAN_SUPER,
    STATUS_ACTIVE,
    SubscriptionPlan,
)

logger = logging.getLogger(__name__)

DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "name": PLAN_FREE,
        "price": 0.0,
        "voice_minutes": 2,
        "description": "Try SelfTalk with a couple of minutes of voice conversation.",
        "features": ["2 voice minutes per month", "Basic voice", "Community support"],
        "is_popular": False,
    },
    {
        "name": PLAN_PREMIUM,
        "price": 99.9,
        "voice_minutes": 50,
        "description": "For regular conversations with your companion.",
        "features": ["50 voice minutes per month", "Premium voices", "Conversation history", "Email support"],
        "is_popular": True,
    },
    {
        "name": PLAN_SUPER,
        "price": 299.9,
        "voice_minutes": 200,
        "description": "Unlimited-feeling talk time for power users.",
        "features": ["200 voice minutes per month", "All voices", "Conversation history", "Priority support"],
        "is_popular": False,
    },
]

_EDITABLE_FIELDS = {"status", "price", "voice_minutes", "features", "description", "is_popular", "currency"}


class PlanCatalog:
    """Plan template repository."""

    def __init__(self, session_factory: Callable[[], ContextManager[Session]] = get_session_context) -> None:
        self._session_factory = session_factory

    def seed_default_plans(self) -> int:
        """Insert the default templates that do not exist yet. Returns how many were added."""
        added = 0
        with self._session_factory() as db:
            existing = set(db.exec(select(SubscriptionPlan.name)).all())
            for template in DEFAULT_PLANS:
                if template["name"] in existing:
                    continue
                db.add(SubscriptionPlan(status=STATUS_ACTIVE, billing_period="monthly", currency="EUR", **template))
                added += 1
            db.commit()
        if added:
            logger.info("plan_templates_seeded", extra={"count": added})
        return added

    def get_by_name(self, name: str) -> Optional[SubscriptionPlan]:
        with self._session_factory() as db:
            return db.exec(select(SubscriptionPlan).where(SubscriptionPlan.name == name)).first()

    def list_plans(self, status: Optional[str] = None) -> List[SubscriptionPlan]:
        with self._session_factory() as db:
            stmt = select(SubscriptionPlan).order_by(SubscriptionPlan.price)
            if status is not None:
                stmt = stmt.where(SubscriptionPlan.status == status)
            return list(db.exec(stmt).all())

    def update_plan(self, name: str, changes: Dict[str, Any]) -> SubscriptionPlan:
        """Apply admin edits to a template after validating them."""
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise SelfTalkError("ST-PLN-004", detail=f"fields not editable: {sorted(unknown)}")
        _validate_plan_changes(changes)

        with self._session_factory() as db:
            plan = db.exec(select(SubscriptionPlan).where(SubscriptionPlan.name == name)).first()
            if plan is None:
                raise SelfTalkError("ST-PLN-002", detail=f"plan template {name!r} not found")
            for key, value in changes.items():
                setattr(plan, key, list(value) if key == "features" else value)
            plan.updated_at = utcnow()
            db.add(plan)
            db.commit()

        logger.info("plan_template_updated", extra={"plan": name, "fields": sorted(changes)})
        return plan


def _validate_plan_changes(changes: Dict[str, Any]) -> None:
    for key in ("price", "voice_minutes"):
        if key in changes:
            value = changes[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0:
                raise SelfTalkError("ST-PLN-004", detail=f"{key} must be a non-negative number")
    if "status" in changes and changes["status"] not in PLAN_STATUSES:
        raise SelfTalkError("ST-PLN-004", detail=f"status must be one of {PLAN_STATUSES}")
    if "features" in changes:
        features = changes["features"]
        if not isinstance(features, list) or not features or not all(isinstance(f, str) and f.strip() for f in features):
            raise SelfTalkError("ST-PLN-004", detail="features must be a non-empty list of strings")
