from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from lumen.business.subscription.eligibility import UsageAccessor, read_usage
from lumen.business.subscription.errors import SubscriptionNotFound
from lumen.business.subscription.models import Subscription
from lumen.business.usage.models import UsageRecord
from lumen.business.usage.repository import SqlUsageAccessor, UsageRecordRepository
from lumen.business.usage.schemas import UsageRecordCreate, UsageRecordRead, UsageSummaryRead
from lumen.platform.security.context import AuthContext


@dataclass(slots=True)
class UsageService:
    usage_repository: UsageRecordRepository = field(default_factory=UsageRecordRepository)
    accessor: UsageAccessor = field(default_factory=SqlUsageAccessor)

    def record_usage(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        payload: UsageRecordCreate,
    ) -> UsageRecordRead:
        subscription = self._get_subscription(session, ctx, subscription_id, write=True)
        record = UsageRecord(
            subscription_id=subscription.id,
            metric=payload.metric,
            amount=payload.amount,
            recorded_at=payload.recorded_at or datetime.now(timezone.utc),
        )
        session.add(record)
        session.commit()
        session.refresh(record)
        return UsageRecordRead.model_validate(record)

    def get_usage_summary(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> UsageSummaryRead:
        subscription = self._get_subscription(session, ctx, subscription_id)
        current = read_usage(session, self.accessor, subscription.id)
        quota = subscription.quota_snapshot

        percentage: Decimal | None = None
        remaining: int | None = None
        if quota is not None:
            remaining = max(quota - current, 0)
            if quota > 0:
                percentage = (Decimal(current) * 100 / Decimal(quota)).quantize(Decimal("0.01"))
            else:
                percentage = Decimal("100.00") if current > 0 else Decimal("0.00")

        return UsageSummaryRead(
            subscription_id=subscription.id,
            current_usage=current,
            quota=quota,
            usage_percentage=percentage,
            remaining=remaining,
        )

    def _get_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        *,
        write: bool = False,
    ) -> Subscription:
        subscription = session.get(Subscription, subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        if write:
            self.usage_repository.validate_write_scope(ctx, owner_id=subscription.user_id)
        else:
            self.usage_repository.validate_read_scope(ctx, owner_id=subscription.user_id)
        return subscription


usage_service = UsageService()
