from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


SubscriptionStatus = Literal["trial", "active", "paused", "cancelled", "expired"]
LifecycleAction = Literal[
    "create",
    "upgrade",
    "downgrade",
    "cancel",
    "pause",
    "resume",
    "renew",
    "activate",
    "rollover",
    "expire",
]


class SubscriptionCreate(BaseModel):
    plan_id: UUID
    auto_renewal: bool = True
    discount_percentage: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), le=Decimal("100"))
    # honoured only for admin callers creating on behalf of a user
    user_id: str | None = Field(default=None, min_length=1, max_length=128)


class UpgradeRequest(BaseModel):
    target_plan_id: UUID
    reason: str | None = Field(default=None, max_length=500)


class DowngradeRequest(BaseModel):
    target_plan_id: UUID
    immediate: bool = False
    override_usage_check: bool = False
    reason: str | None = Field(default=None, max_length=500)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)
    immediate: bool = False


class PauseRequest(BaseModel):
    duration_days: int | None = Field(default=None, ge=1, le=365)
    reason: str | None = Field(default=None, max_length=500)


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    plan_id: UUID
    status: SubscriptionStatus | str
    billing_cycle: str
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime | None
    trial_start: datetime | None
    trial_end: datetime | None
    cancelled_at: datetime | None
    cancel_reason: str | None
    paused_at: datetime | None
    pause_duration_days: int | None
    pause_reason: str | None
    auto_renewal: bool
    discount_percentage: Decimal
    price_snapshot: Decimal
    quota_snapshot: int | None
    pending_plan_id: UUID | None
    pending_change_effective_at: datetime | None
    created_at: datetime
    updated_at: datetime


class SubscriptionLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    action: LifecycleAction | str
    details: dict[str, Any] | None = Field(default=None, serialization_alias="metadata")
    created_at: datetime


class ProcessDueResponse(BaseModel):
    activated: int = 0
    rolled_over: int = 0
    expired: int = 0
    resumed: int = 0
    skipped: int = 0
    failed: int = 0
