from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lumen.business.subscription.eligibility import UsageUnavailable
from lumen.business.usage.models import UsageRecord
from lumen.platform.security.repository import BaseRepository


class UsageRecordRepository(BaseRepository):
    resource = "usage.record"


class SqlUsageAccessor:
    """Reads the most recent usage reading recorded for a subscription."""

    def get_current_usage(self, session: Session, subscription_id: uuid.UUID) -> int:
        try:
            amount = session.scalar(
                select(UsageRecord.amount)
                .where(UsageRecord.subscription_id == subscription_id)
                .order_by(UsageRecord.recorded_at.desc())
                .limit(1)
            )
        except SQLAlchemyError as exc:
            session.rollback()
            raise UsageUnavailable(str(exc)) from exc
        return int(amount or 0)
