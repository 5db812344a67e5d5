from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from lumen.business.catalog.models import Plan
from lumen.business.reporting.schemas import ChurnReportRead, PlanSubscriptionCount, SubscriptionSummaryRead
from lumen.business.subscription.cycle import MONTHLY_FACTOR, apply_discount, as_utc, q_money
from lumen.business.subscription.models import LIVE_STATUSES, SUBSCRIPTION_STATUSES, Subscription
from lumen.platform.security.context import AuthContext
from lumen.platform.security.rls import require_admin


@dataclass(slots=True)
class SubscriptionReportingService:
    """Read-only projections over subscriptions. Admin callers only."""

    def summary(self, session: Session, ctx: AuthContext) -> SubscriptionSummaryRead:
        require_admin("subscription.report", ctx, action="read")

        counts = dict.fromkeys(SUBSCRIPTION_STATUSES, 0)
        for status_value, count in session.execute(
            select(Subscription.status, func.count()).group_by(Subscription.status)
        ).all():
            counts[status_value] = int(count)

        plan_rows = session.execute(
            select(Plan.id, Plan.name, func.count(Subscription.id))
            .join(Subscription, Subscription.plan_id == Plan.id)
            .where(Subscription.status.in_(LIVE_STATUSES))
            .group_by(Plan.id, Plan.name)
            .order_by(func.count(Subscription.id).desc(), Plan.name.asc())
        ).all()

        return SubscriptionSummaryRead(
            as_of=datetime.now(timezone.utc),
            status_counts=counts,
            plans=[
                PlanSubscriptionCount(plan_id=plan_id, plan_name=name, live_subscriptions=int(count))
                for plan_id, name, count in plan_rows
            ],
            monthly_recurring_revenue=self._monthly_recurring_revenue(session),
        )

    def churn(self, session: Session, ctx: AuthContext, *, window_start: datetime, window_end: datetime) -> ChurnReportRead:
        """Cancellations inside the window divided by subscriptions live at its start."""
        require_admin("subscription.report", ctx, action="read")
        window_start = as_utc(window_start)
        window_end = as_utc(window_end)

        rows = session.scalars(select(Subscription).where(Subscription.created_at <= window_end)).all()
        live_at_start = 0
        cancelled = 0
        for row in rows:
            created_at = as_utc(row.created_at)
            cancelled_at = as_utc(row.cancelled_at) if row.cancelled_at is not None else None
            if created_at <= window_start and (cancelled_at is None or cancelled_at > window_start):
                live_at_start += 1
            if cancelled_at is not None and window_start < cancelled_at <= window_end:
                cancelled += 1

        rate = Decimal("0")
        if live_at_start:
            rate = (Decimal(cancelled) / Decimal(live_at_start)).quantize(Decimal("0.0001"))

        return ChurnReportRead(
            window_start=window_start,
            window_end=window_end,
            live_at_start=live_at_start,
            cancelled_in_window=cancelled,
            churn_rate=rate,
        )

    @staticmethod
    def _monthly_recurring_revenue(session: Session) -> Decimal:
        total = Decimal("0")
        for row in session.scalars(select(Subscription).where(Subscription.status == "active")).all():
            factor = MONTHLY_FACTOR.get(row.billing_cycle, Decimal(1))
            total += apply_discount(row.price_snapshot, row.discount_percentage) * factor
        return q_money(total)


reporting_service = SubscriptionReportingService()
