"""
Subscriptions Router
====================

User endpoints:
    GET  /api/subscriptions/plans          active plan templates (public)
    GET  /api/subscriptions/me             current ledger snapshot
    POST /api/subscriptions/purchase       buy / switch plan
    POST /api/subscriptions/minutes        top-up minutes
    POST /api/subscriptions/expiry-check   apply expiry if the cycle ended
    PUT  /api/subscriptions/voice-model    pick voice / model ids

Admin endpoints:
    GET   /api/admin/plans                 all plan templates
    PATCH /api/admin/plans/{name}          edit a plan template

Phase: ST-03 - Subscriptions
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from app.auth.access_tokens import AuthenticatedUser, get_current_user, require_admin
from app.core.errors import SelfTalkError
from app.models.subscription import STATUS_ACTIVE, SubscriptionPlan, UserSubscription
from app.services.account_service import AccountService
from app.services.plan_catalog import PlanCatalog
from app.services.subscription_service import SubscriptionLifecycleManager, normalize_plan_name

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter()


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class PlanResponse(BaseModel):
    id: str
    name: str
    status: str
    price: float
    billing_period: str
    voice_minutes: float
    features: List[str]
    description: str
    is_popular: bool
    currency: str


class SubscriptionResponse(BaseModel):
    id: str
    name: str
    status: str
    price: float
    billing_period: str
    features: List[str]
    description: str
    is_popular: bool
    currency: str
    total_minutes: float
    available_minutes: float
    extra_minutes: float
    # What the user can still talk: plan minutes + top-up minutes
    spendable_minutes: float
    seconds: int
    recordings: List[str]
    subscription_started_at: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ExpiryCheckResponse(BaseModel):
    expired: bool
    subscription: SubscriptionResponse


class PurchaseRequest(BaseModel):
    plan_name: str = Field(..., min_length=1, max_length=32)


class AddMinutesRequest(BaseModel):
    # Validated by the lifecycle manager (rejects strings, booleans, <= 0)
    minutes: Any


class VoiceModelRequest(BaseModel):
    voice_id: Optional[str] = Field(default=None, max_length=128)
    model_id: Optional[str] = Field(default=None, max_length=128)


class PlanUpdateRequest(BaseModel):
    status: Optional[str] = None
    price: Optional[float] = None
    voice_minutes: Optional[float] = None
    features: Optional[List[str]] = None
    description: Optional[str] = Field(default=None, max_length=1024)
    is_popular: Optional[bool] = None
    currency: Optional[str] = Field(default=None, max_length=8)


def plan_response(plan: SubscriptionPlan) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        name=plan.name,
        status=plan.status,
        price=plan.price,
        billing_period=plan.billing_period,
        voice_minutes=plan.voice_minutes,
        features=list(plan.features or []),
        description=plan.description,
        is_popular=plan.is_popular,
        currency=plan.currency,
    )


def subscription_response(record: UserSubscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=record.id,
        name=record.name,
        status=record.status,
        price=record.price,
        billing_period=record.billing_period,
        features=list(record.features or []),
        description=record.description,
        is_popular=record.is_popular,
        currency=record.currency,
        total_minutes=record.total_minutes,
        available_minutes=record.available_minutes,
        extra_minutes=record.extra_minutes,
        spendable_minutes=record.available_minutes + record.extra_minutes,
        seconds=record.seconds,
        recordings=list(record.recordings or []),
        subscription_started_at=record.subscription_started_at,
        subscription_end_date=record.subscription_end_date,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_lifecycle(request: Request) -> SubscriptionLifecycleManager:
    return request.app.state.lifecycle


def get_catalog(request: Request) -> PlanCatalog:
    return request.app.state.plan_catalog


def get_account_service(request: Request) -> AccountService:
    return request.app.state.account_service


# ---------------------------------------------------------------------------
# User endpoints
# ---------------------------------------------------------------------------

@router.get("/plans", response_model=List[PlanResponse], summary="Active plans")
async def list_active_plans(catalog: PlanCatalog = Depends(get_catalog)):
    return [plan_response(p) for p in catalog.list_plans(status=STATUS_ACTIVE)]


@router.get("/me", response_model=SubscriptionResponse, summary="Current subscription")
async def my_subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
):
    return subscription_response(lifecycle.get_subscription(user.user_id))


@router.post("/purchase", response_model=SubscriptionResponse, summary="Buy or switch plan")
async def purchase_plan(
    body: PurchaseRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
):
    return subscription_response(lifecycle.purchase_plan(user.user_id, body.plan_name))


@router.post("/minutes", response_model=SubscriptionResponse, summary="Top up minutes")
async def add_minutes(
    body: AddMinutesRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
):
    return subscription_response(lifecycle.add_minutes(user.user_id, body.minutes))


@router.post("/expiry-check", response_model=ExpiryCheckResponse, summary="Apply expiry if due")
async def expiry_check(
    user: AuthenticatedUser = Depends(get_current_user),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
):
    result = lifecycle.check_and_apply_expiry(user.user_id)
    return ExpiryCheckResponse(expired=result.expired, subscription=subscription_response(result.subscription))


@router.put("/voice-model", summary="Select voice and model")
async def update_voice_model(
    body: VoiceModelRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    accounts: AccountService = Depends(get_account_service),
):
    updated = accounts.update_voice_model(user.user_id, voice_id=body.voice_id, model_id=body.model_id)
    return {"voice_id": updated.voice_id, "model_id": updated.model_id}


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@admin_router.get("/plans", response_model=List[PlanResponse], summary="All plan templates")
async def list_all_plans(
    _admin: AuthenticatedUser = Depends(require_admin),
    catalog: PlanCatalog = Depends(get_catalog),
):
    return [plan_response(p) for p in catalog.list_plans()]


@admin_router.patch("/plans/{name}", response_model=PlanResponse, summary="Edit a plan template")
async def update_plan(
    name: str,
    body: PlanUpdateRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    catalog: PlanCatalog = Depends(get_catalog),
):
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise SelfTalkError("ST-PLN-004", detail="no fields to update")
    plan = catalog.update_plan(normalize_plan_name(name), changes)
    logger.info("admin_plan_update", extra={"admin_id": admin.user_id, "plan": plan.name})
    return plan_response(plan)
