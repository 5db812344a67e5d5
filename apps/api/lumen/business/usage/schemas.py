from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class UsageRecordCreate(BaseModel):
    amount: int = Field(ge=0)
    metric: str = Field(default="requests", min_length=1, max_length=64)
    recorded_at: datetime | None = None


class UsageRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    metric: str
    amount: int
    recorded_at: datetime


class UsageSummaryRead(BaseModel):
    subscription_id: UUID
    current_usage: int
    quota: int | None
    usage_percentage: Decimal | None
    remaining: int | None
