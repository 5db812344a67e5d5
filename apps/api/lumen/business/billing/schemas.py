from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


BillingKind = Literal["charge", "proration", "refund"]
BillingStatus = Literal["pending", "completed", "failed", "cancelled"]


class BillingRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    user_id: str
    invoice_number: str
    kind: BillingKind | str
    amount: Decimal
    billing_date: datetime
    next_billing_date: datetime | None
    status: BillingStatus | str
    note: str | None
    failure_reason: str | None
    created_at: datetime
    updated_at: datetime


class MarkBillingFailedRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
