from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any


@dataclass(frozen=True, slots=True)
class SubscriptionPatch:
    """Base for the column changes a single lifecycle operation may write.

    Every field a patch declares is written, including ``None`` values, so a
    patch both sets and clears columns explicitly.
    """

    def changes(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class PlanChangePatch(SubscriptionPatch):
    plan_id: uuid.UUID
    billing_cycle: str
    price_snapshot: Decimal
    quota_snapshot: int | None
    pending_plan_id: None = None
    pending_change_effective_at: None = None


@dataclass(frozen=True, slots=True)
class ScheduledPlanChangePatch(SubscriptionPatch):
    pending_plan_id: uuid.UUID
    pending_change_effective_at: datetime


@dataclass(frozen=True, slots=True)
class CancelPatch(SubscriptionPatch):
    cancelled_at: datetime
    cancel_reason: str | None
    status: str = "cancelled"
    auto_renewal: bool = False
    next_billing_date: None = None
    pending_plan_id: None = None
    pending_change_effective_at: None = None
    paused_at: None = None
    pause_duration_days: None = None


@dataclass(frozen=True, slots=True)
class PausePatch(SubscriptionPatch):
    paused_at: datetime
    pause_duration_days: int | None
    pause_reason: str | None
    status: str = "paused"


@dataclass(frozen=True, slots=True)
class ResumePatch(SubscriptionPatch):
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime
    status: str = "active"
    paused_at: None = None
    pause_duration_days: None = None
    pause_reason: None = None


@dataclass(frozen=True, slots=True)
class TrialConversionPatch(SubscriptionPatch):
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime
    status: str = "active"


@dataclass(frozen=True, slots=True)
class PeriodRolloverPatch(SubscriptionPatch):
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime
    plan_id: uuid.UUID
    billing_cycle: str
    price_snapshot: Decimal
    quota_snapshot: int | None
    pending_plan_id: None = None
    pending_change_effective_at: None = None


@dataclass(frozen=True, slots=True)
class ExpirePatch(SubscriptionPatch):
    status: str = "expired"
    next_billing_date: None = None
    pending_plan_id: None = None
    pending_change_effective_at: None = None
