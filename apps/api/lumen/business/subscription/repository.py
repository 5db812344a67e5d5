from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lumen.business.catalog.models import Plan
from lumen.business.subscription.errors import DuplicateSubscription, PlanNotFound, SubscriptionConflict
from lumen.business.subscription.models import LIVE_STATUSES, Subscription, SubscriptionLog
from lumen.business.subscription.patches import SubscriptionPatch
from lumen.platform.security.repository import BaseRepository


class SubscriptionRepository(BaseRepository):
    resource = "subscription.subscription"


@dataclass(frozen=True, slots=True)
class BillingRequest:
    """What the lifecycle engine asks the billing collaborator to record."""

    subscription_id: uuid.UUID
    user_id: str
    kind: str
    amount: Decimal
    billing_date: datetime
    next_billing_date: datetime | None
    note: str


class PlanCatalog(Protocol):
    def get_plan(self, session: Session, plan_id: uuid.UUID) -> Plan:
        ...


class SubscriptionStore(Protocol):
    def get_by_id(self, session: Session, subscription_id: uuid.UUID) -> Subscription | None:
        ...

    def get_active_for_user_and_plan(self, session: Session, user_id: str, plan_id: uuid.UUID) -> Subscription | None:
        ...

    def get_pending_change_onto(self, session: Session, user_id: str, plan_id: uuid.UUID) -> Subscription | None:
        ...

    def create(self, session: Session, subscription: Subscription) -> Subscription:
        ...

    def conditional_update(
        self,
        session: Session,
        subscription_id: uuid.UUID,
        expected_status: str,
        patch: SubscriptionPatch,
        *,
        action: str,
    ) -> Subscription:
        ...


class BillingRecordGenerator(Protocol):
    def request_billing_record(self, session: Session, request: BillingRequest) -> Any:
        ...

    def void_pending_charges(self, session: Session, subscription_id: uuid.UUID, after: datetime) -> int:
        ...


class LifecycleLogSink(Protocol):
    def append(
        self,
        session: Session,
        subscription_id: uuid.UUID,
        action: str,
        metadata: dict[str, Any],
        timestamp: datetime,
    ) -> None:
        ...


class SqlPlanCatalog:
    def get_plan(self, session: Session, plan_id: uuid.UUID) -> Plan:
        plan = session.get(Plan, plan_id)
        if plan is None:
            raise PlanNotFound(plan_id)
        return plan


class SqlSubscriptionStore:
    def get_by_id(self, session: Session, subscription_id: uuid.UUID) -> Subscription | None:
        return session.get(Subscription, subscription_id)

    def get_active_for_user_and_plan(self, session: Session, user_id: str, plan_id: uuid.UUID) -> Subscription | None:
        return session.scalar(
            select(Subscription).where(
                and_(
                    Subscription.user_id == user_id,
                    Subscription.plan_id == plan_id,
                    Subscription.status.in_(LIVE_STATUSES),
                )
            )
        )

    def get_pending_change_onto(self, session: Session, user_id: str, plan_id: uuid.UUID) -> Subscription | None:
        return session.scalar(
            select(Subscription).where(
                and_(
                    Subscription.user_id == user_id,
                    Subscription.pending_plan_id == plan_id,
                    Subscription.status.in_(LIVE_STATUSES),
                )
            )
        )

    def create(self, session: Session, subscription: Subscription) -> Subscription:
        session.add(subscription)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise DuplicateSubscription(subscription.user_id, subscription.plan_id)
        session.refresh(subscription)
        return subscription

    def conditional_update(
        self,
        session: Session,
        subscription_id: uuid.UUID,
        expected_status: str,
        patch: SubscriptionPatch,
        *,
        action: str,
    ) -> Subscription:
        changes = patch.changes()
        try:
            result = session.execute(
                update(Subscription)
                .where(and_(Subscription.id == subscription_id, Subscription.status == expected_status))
                .values(**changes)
                .execution_options(synchronize_session=False)
            )
        except IntegrityError:
            # plan change onto a plan the user already holds a live subscription for
            session.rollback()
            raise DuplicateSubscription(None, changes.get("plan_id"))
        if result.rowcount == 0:
            session.rollback()
            raise SubscriptionConflict(subscription_id, expected_status, action)
        session.commit()

        subscription = session.get(Subscription, subscription_id, populate_existing=True)
        if subscription is None:
            raise SubscriptionConflict(subscription_id, expected_status, action)
        return subscription


class SqlLifecycleLogSink:
    def append(
        self,
        session: Session,
        subscription_id: uuid.UUID,
        action: str,
        metadata: dict[str, Any],
        timestamp: datetime,
    ) -> None:
        session.add(
            SubscriptionLog(
                subscription_id=subscription_id,
                action=action,
                details=metadata,
                created_at=timestamp,
            )
        )
        session.commit()
