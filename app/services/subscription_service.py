"""
Subscription Lifecycle Manager
==============================

PURPOSE:
    Owns every ledger mutation that is not a metering tick:

    - purchase / switch plan (reset plan-cycle minutes, keep top-ups)
    - registration-time Free ledger
    - top-up minutes
    - expiry check (an expired cycle falls back to Free, keeping top-ups)

    Each plan assignment starts a cycle of ``plan_cycle_months`` calendar
    months, Free included. Ledgers with no end date (created before
    cycles applied to Free) never expire.

    All writes go through LedgerStore.save() (compare-and-swap) and are
    retried on conflict, so a purchase racing a live metering tick never
    loses either update.

PHASE: ST-03 - Subscriptions
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from app.config import settings
from app.core.database import get_session_context
from app.core.errors import SelfTalkError
from app.core.timeutil import add_months, as_utc, utcnow
from app.models.subscription import PLAN_FREE, PLAN_NAMES, STATUS_ACTIVE, SubscriptionPlan, UserSubscription
from app.models.user import User
from app.services.ledger_store import LedgerConflictError, LedgerStore
from app.services.plan_catalog import PlanCatalog
from app.services.reconciliation import whole_seconds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpiryResult:
    """Outcome of an expiry check."""

    subscription: UserSubscription
    expired: bool


def normalize_plan_name(plan_name: Any) -> str:
    """'  premium ' -> 'Premium'. Raises ST-PLN-001 for anything but Free/Premium/Super."""
    if not isinstance(plan_name, str) or not plan_name.strip():
        raise SelfTalkError("ST-PLN-001", detail=f"plan name {plan_name!r} is not a string")
    cleaned = plan_name.strip()
    normalized = cleaned[0].upper() + cleaned[1:].lower()
    if normalized not in PLAN_NAMES:
        raise SelfTalkError("ST-PLN-001", detail=f"unknown plan {plan_name!r}")
    return normalized


def validate_minutes(minutes: Any) -> float:
    """Positive finite number. Booleans and numeric strings are rejected."""
    if isinstance(minutes, bool) or not isinstance(minutes, (int, float)):
        raise SelfTalkError("ST-LDG-001", detail=f"minutes {minutes!r} is not a number")
    value = float(minutes)
    if not math.isfinite(value) or value <= 0:
        raise SelfTalkError("ST-LDG-001", detail=f"minutes {minutes!r} must be > 0")
    return value


class SubscriptionLifecycleManager:
    """Purchase, top-up and expiry operations on subscription ledgers."""

    def __init__(
        self,
        store: LedgerStore,
        catalog: PlanCatalog,
        cycle_months: Optional[int] = None,
        write_retries: Optional[int] = None,
        user_session_factory: Callable = get_session_context,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._cycle_months = cycle_months if cycle_months is not None else settings.plan_cycle_months
        self._write_retries = max(1, write_retries if write_retries is not None else settings.ledger_write_retries)
        self._user_session_factory = user_session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_subscription(self, user_id: str) -> UserSubscription:
        self._require_user(user_id)
        record = self._store.get_for_user(user_id)
        if record is None:
            raise SelfTalkError("ST-SUB-001", detail=f"user {user_id} has no subscription")
        return record

    # ------------------------------------------------------------------
    # Plan assignment
    # ------------------------------------------------------------------

    def purchase_plan(self, user_id: str, plan_name: Any, now: Optional[datetime] = None) -> UserSubscription:
        """Buy or switch to ``plan_name``. Plan minutes reset; top-up minutes are kept."""
        name = normalize_plan_name(plan_name)
        plan = self._catalog.get_by_name(name)
        if plan is None:
            raise SelfTalkError("ST-PLN-002", detail=f"plan template {name!r} not found")
        if plan.status != STATUS_ACTIVE:
            raise SelfTalkError("ST-PLN-003", detail=f"plan {name!r} is {plan.status}")

        record = self._assign_plan(user_id, plan, now or utcnow())
        logger.info(
            "subscription_purchased",
            extra={"user_id": user_id, "plan": name, "seconds": record.seconds, "extra_minutes": record.extra_minutes},
        )
        return record

    def create_free_subscription(self, user_id: str, now: Optional[datetime] = None) -> UserSubscription:
        """Registration-time Free ledger (the template's status is not checked)."""
        plan = self._catalog.get_by_name(PLAN_FREE)
        if plan is None:
            raise SelfTalkError("ST-PLN-002", detail="Free plan template not found")
        return self._assign_plan(user_id, plan, now or utcnow())

    def _assign_plan(self, user_id: str, plan: SubscriptionPlan, now: datetime) -> UserSubscription:
        self._require_user(user_id)
        for attempt in range(self._write_retries):
            record = self._store.get_for_user(user_id)
            try:
                if record is None:
                    record = UserSubscription(user_id=user_id, extra_minutes=0.0)
                    self._apply_plan(record, plan, now)
                    return self._store.create_for_user(record)
                self._apply_plan(record, plan, now)
                return self._store.save(record)
            except LedgerConflictError:
                logger.info("subscription_write_conflict", extra={"user_id": user_id, "attempt": attempt + 1})
        raise LedgerConflictError(record.id if record is not None else user_id, -1)

    def _apply_plan(self, record: UserSubscription, plan: SubscriptionPlan, now: datetime) -> None:
        extra = max(float(record.extra_minutes or 0.0), 0.0)
        grant = float(plan.voice_minutes)

        record.plan_id = plan.id
        record.name = plan.name
        record.status = plan.status
        record.price = plan.price
        record.billing_period = plan.billing_period
        record.features = list(plan.features or [])
        record.description = plan.description
        record.is_popular = plan.is_popular
        record.currency = plan.currency

        record.available_minutes = grant
        record.extra_minutes = extra
        record.total_minutes = grant + extra
        record.seconds = whole_seconds(grant + extra)
        record.subscription_started_at = now
        record.subscription_end_date = add_months(now, self._cycle_months)

    # ------------------------------------------------------------------
    # Top-up
    # ------------------------------------------------------------------

    def add_minutes(self, user_id: str, minutes: Any) -> UserSubscription:
        """Add top-up minutes. Extends a live countdown; plan minutes unchanged."""
        value = validate_minutes(minutes)

        def apply(record: UserSubscription) -> None:
            before = whole_seconds(record.available_minutes + record.extra_minutes)
            record.extra_minutes = record.extra_minutes + value
            record.total_minutes = record.total_minutes + value
            after = whole_seconds(record.available_minutes + record.extra_minutes)
            record.seconds = record.seconds + (after - before)

        record = self._mutate(user_id, apply)
        logger.info(
            "subscription_minutes_added",
            extra={"user_id": user_id, "minutes": value, "seconds": record.seconds},
        )
        return record

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def check_and_apply_expiry(self, user_id: str, now: Optional[datetime] = None) -> ExpiryResult:
        """Reset an expired cycle to Free values, preserving top-up minutes."""
        now = as_utc(now or utcnow())
        free_plan: Optional[SubscriptionPlan] = None

        self._require_user(user_id)
        for attempt in range(self._write_retries):
            record = self._store.get_for_user(user_id)
            if record is None:
                raise SelfTalkError("ST-SUB-001", detail=f"user {user_id} has no subscription")

            end_date = as_utc(record.subscription_end_date)
            if end_date is None or end_date >= now:
                return ExpiryResult(subscription=record, expired=False)

            if free_plan is None:
                free_plan = self._catalog.get_by_name(PLAN_FREE)
                if free_plan is None:
                    raise SelfTalkError("ST-PLN-002", detail="Free plan template not found")

            previous_plan = record.name
            self._apply_plan(record, free_plan, now)
            try:
                record = self._store.save(record)
            except LedgerConflictError:
                logger.info("subscription_write_conflict", extra={"user_id": user_id, "attempt": attempt + 1})
                continue

            logger.info(
                "subscription_expired",
                extra={"user_id": user_id, "previous_plan": previous_plan, "extra_minutes": record.extra_minutes},
            )
            return ExpiryResult(subscription=record, expired=True)

        raise LedgerConflictError(user_id, -1)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _mutate(self, user_id: str, apply: Callable[[UserSubscription], None]) -> UserSubscription:
        self._require_user(user_id)
        for attempt in range(self._write_retries):
            record = self._store.get_for_user(user_id)
            if record is None:
                raise SelfTalkError("ST-SUB-001", detail=f"user {user_id} has no subscription")
            apply(record)
            try:
                return self._store.save(record)
            except LedgerConflictError:
                logger.info("subscription_write_conflict", extra={"user_id": user_id, "attempt": attempt + 1})
        raise LedgerConflictError(user_id, -1)

    def _require_user(self, user_id: str) -> None:
        with self._user_session_factory() as db:
            if db.get(User, user_id) is None:
                raise SelfTalkError("ST-USR-001", detail=f"user {user_id} not found")
