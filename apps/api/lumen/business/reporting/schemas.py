from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel


class PlanSubscriptionCount(BaseModel):
    plan_id: UUID
    plan_name: str
    live_subscriptions: int


class SubscriptionSummaryRead(BaseModel):
    as_of: datetime
    status_counts: dict[str, int]
    plans: list[PlanSubscriptionCount]
    monthly_recurring_revenue: Decimal


class ChurnReportRead(BaseModel):
    window_start: datetime
    window_end: datetime
    live_at_start: int
    cancelled_in_window: int
    churn_rate: Decimal
