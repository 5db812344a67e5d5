from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from lumen.business.catalog.schemas import PlanRecommendationRead
from lumen.business.catalog.service import catalog_service
from lumen.business.subscription.schemas import (
    CancelRequest,
    DowngradeRequest,
    PauseRequest,
    ProcessDueResponse,
    SubscriptionCreate,
    SubscriptionLogRead,
    SubscriptionRead,
    SubscriptionStatus,
    UpgradeRequest,
)
from lumen.business.subscription.service import subscription_service
from lumen.business.usage.schemas import UsageRecordCreate, UsageRecordRead, UsageSummaryRead
from lumen.business.usage.service import usage_service
from lumen.core.auth import get_auth_context
from lumen.core.config import get_settings
from lumen.core.database import get_db
from lumen.platform.security.context import AuthContext
from lumen.platform.security.rls import require_admin


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: SubscriptionCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_service.create_subscription(db, ctx, payload)


@router.get("", response_model=list[SubscriptionRead])
def list_subscriptions(
    status_filter: SubscriptionStatus | None = Query(default=None, alias="status"),
    plan_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[SubscriptionRead]:
    return subscription_service.list_subscriptions(db, ctx, status=status_filter, plan_id=plan_id)


@router.post("/process-due", response_model=ProcessDueResponse)
def process_due(
    as_of: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ProcessDueResponse:
    require_admin("subscription.sweep", ctx, action="run")
    return subscription_service.process_due(
        db,
        ctx,
        now=as_of,
        limit=get_settings().lifecycle_sweep_batch_size,
    )


@router.get("/{subscription_id}", response_model=SubscriptionRead)
def get_subscription(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_service.get_subscription(db, ctx, subscription_id)


@router.post("/{subscription_id}/upgrade", response_model=SubscriptionRead)
def upgrade_subscription(
    subscription_id: uuid.UUID,
    payload: UpgradeRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_service.upgrade(db, ctx, subscription_id, payload)


@router.post("/{subscription_id}/downgrade", response_model=SubscriptionRead)
def downgrade_subscription(
    subscription_id: uuid.UUID,
    payload: DowngradeRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_service.downgrade(db, ctx, subscription_id, payload)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    subscription_id: uuid.UUID,
    payload: CancelRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_service.cancel(db, ctx, subscription_id, payload)


@router.post("/{subscription_id}/pause", response_model=SubscriptionRead)
def pause_subscription(
    subscription_id: uuid.UUID,
    payload: PauseRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_service.pause(db, ctx, subscription_id, payload)


@router.post("/{subscription_id}/resume", response_model=SubscriptionRead)
def resume_subscription(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_service.resume(db, ctx, subscription_id)


@router.post("/{subscription_id}/renew", response_model=SubscriptionRead)
def renew_subscription(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_service.renew(db, ctx, subscription_id)


@router.get("/{subscription_id}/logs", response_model=list[SubscriptionLogRead])
def list_logs(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[SubscriptionLogRead]:
    return subscription_service.list_logs(db, ctx, subscription_id)


@router.post("/{subscription_id}/usage", response_model=UsageRecordRead, status_code=status.HTTP_201_CREATED)
def record_usage(
    subscription_id: uuid.UUID,
    payload: UsageRecordCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> UsageRecordRead:
    return usage_service.record_usage(db, ctx, subscription_id, payload)


@router.get("/{subscription_id}/usage", response_model=UsageSummaryRead)
def get_usage(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> UsageSummaryRead:
    return usage_service.get_usage_summary(db, ctx, subscription_id)


@router.get("/{subscription_id}/recommendations", response_model=PlanRecommendationRead)
def get_recommendations(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PlanRecommendationRead:
    return catalog_service.recommend_plans(db, ctx, subscription_id)
