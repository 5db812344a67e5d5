from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


BillingCycle = Literal["weekly", "monthly", "quarterly", "yearly"]


class PlanCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    price: Decimal = Field(ge=Decimal("0"), max_digits=10, decimal_places=2)
    billing_cycle: BillingCycle = "monthly"
    quota: int | None = Field(default=None, ge=0)
    trial_days: int = Field(default=0, ge=0)
    is_active: bool = True
    features: dict[str, Any] | None = None


class PlanUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    price: Decimal | None = Field(default=None, ge=Decimal("0"), max_digits=10, decimal_places=2)
    billing_cycle: BillingCycle | None = None
    quota: int | None = Field(default=None, ge=0)
    trial_days: int | None = Field(default=None, ge=0)
    is_active: bool | None = None
    features: dict[str, Any] | None = None


class PlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    price: Decimal
    billing_cycle: BillingCycle | str
    quota: int | None
    trial_days: int
    is_active: bool
    features: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime


class PlanRecommendationRead(BaseModel):
    subscription_id: UUID
    current_usage: int
    usage_percentage: Decimal | None
    direction: Literal["upgrade", "downgrade", "none"]
    plans: list[PlanRead]
