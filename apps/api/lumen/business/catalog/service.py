from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import Select, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lumen import events
from lumen.business.catalog.models import Plan
from lumen.business.catalog.repository import PlanRepository
from lumen.business.catalog.schemas import PlanCreate, PlanRead, PlanRecommendationRead, PlanUpdate
from lumen.business.subscription.eligibility import Offering, UsageAccessor, is_downgrade, is_upgrade, read_usage
from lumen.business.subscription.errors import DuplicatePlan, PlanInUse, PlanNotFound, SubscriptionNotFound
from lumen.business.subscription.models import LIVE_STATUSES, Subscription
from lumen.business.subscription.repository import SubscriptionRepository
from lumen.business.usage.repository import SqlUsageAccessor
from lumen.platform.security.context import AuthContext

logger = logging.getLogger("lumen.catalog")

HIGH_USAGE_RATIO = Decimal("0.8")
LOW_USAGE_RATIO = Decimal("0.3")
DOWNGRADE_HEADROOM = Decimal("1.2")
MAX_UPGRADE_SUGGESTIONS = 3
MAX_DOWNGRADE_SUGGESTIONS = 2


@dataclass(slots=True)
class CatalogService:
    plan_repository: PlanRepository = field(default_factory=PlanRepository)
    subscription_repository: SubscriptionRepository = field(default_factory=SubscriptionRepository)
    usage_accessor: UsageAccessor = field(default_factory=SqlUsageAccessor)

    def create_plan(self, session: Session, ctx: AuthContext, payload: PlanCreate) -> PlanRead:
        self.plan_repository.validate_admin_write(ctx, action="create")

        plan = Plan(**payload.model_dump(mode="python"))
        session.add(plan)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise DuplicatePlan(payload.name)
        session.refresh(plan)

        logger.info("catalog.plan_created", extra={"plan_id": str(plan.id)})
        self._emit_plan_event("catalog.plan.created", plan, ctx)
        return PlanRead.model_validate(plan)

    def update_plan(self, session: Session, ctx: AuthContext, plan_id: uuid.UUID, payload: PlanUpdate) -> PlanRead:
        """Apply a partial update. Explicit ``quota: null`` makes the plan unlimited.

        Existing subscriptions keep their own price and quota snapshot, so
        price and quota changes only affect subscriptions created afterwards.
        """
        self.plan_repository.validate_admin_write(ctx, action="update")
        plan = self._get_plan(session, plan_id)

        changes = payload.model_dump(mode="python", exclude_unset=True)
        if changes.get("is_active") is False and plan.is_active:
            self._ensure_no_live_subscriptions(session, plan)

        for key, value in changes.items():
            setattr(plan, key, value)
        session.add(plan)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise DuplicatePlan(str(changes.get("name", plan.name)))
        session.refresh(plan)

        self._emit_plan_event("catalog.plan.updated", plan, ctx)
        return PlanRead.model_validate(plan)

    def deactivate_plan(self, session: Session, ctx: AuthContext, plan_id: uuid.UUID) -> PlanRead:
        self.plan_repository.validate_admin_write(ctx, action="deactivate")
        plan = self._get_plan(session, plan_id)
        self._ensure_no_live_subscriptions(session, plan)

        plan.is_active = False
        session.add(plan)
        session.commit()
        session.refresh(plan)

        logger.info("catalog.plan_deactivated", extra={"plan_id": str(plan.id)})
        self._emit_plan_event("catalog.plan.deactivated", plan, ctx)
        return PlanRead.model_validate(plan)

    def delete_plan(self, session: Session, ctx: AuthContext, plan_id: uuid.UUID) -> None:
        self.plan_repository.validate_admin_write(ctx, action="delete")
        plan = self._get_plan(session, plan_id)

        history = session.scalar(
            select(func.count())
            .select_from(Subscription)
            .where(or_(Subscription.plan_id == plan.id, Subscription.pending_plan_id == plan.id))
        ) or 0
        if history > 0:
            raise PlanInUse(
                "Cannot delete plan with subscription history; deactivate it instead",
                details={"plan_id": str(plan.id), "subscriptions": history},
            )

        session.delete(plan)
        session.commit()
        logger.info("catalog.plan_deleted", extra={"plan_id": str(plan_id)})
        events.publish({"event_type": "catalog.plan.deleted", "plan_id": str(plan_id), "correlation_id": ctx.correlation_id})

    def list_plans(self, session: Session, *, active_only: bool = True) -> list[PlanRead]:
        stmt: Select[tuple[Plan]] = select(Plan)
        if active_only:
            stmt = stmt.where(Plan.is_active.is_(True))
        rows = session.scalars(stmt.order_by(Plan.price.asc(), Plan.name.asc())).all()
        return [PlanRead.model_validate(row) for row in rows]

    def get_plan(self, session: Session, plan_id: uuid.UUID) -> PlanRead:
        return PlanRead.model_validate(self._get_plan(session, plan_id))

    def upgrade_options(self, session: Session, plan_id: uuid.UUID) -> list[PlanRead]:
        current = self._offering(self._get_plan(session, plan_id))
        candidates = [plan for plan in self._active_plans(session) if is_upgrade(current, self._offering(plan))]
        candidates.sort(key=lambda plan: self._offering(plan).rank())
        return [PlanRead.model_validate(plan) for plan in candidates]

    def downgrade_options(self, session: Session, plan_id: uuid.UUID) -> list[PlanRead]:
        current = self._offering(self._get_plan(session, plan_id))
        candidates = [plan for plan in self._active_plans(session) if is_downgrade(current, self._offering(plan))]
        candidates.sort(key=lambda plan: self._offering(plan).rank(), reverse=True)
        return [PlanRead.model_validate(plan) for plan in candidates]

    def recommend_plans(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> PlanRecommendationRead:
        """Suggest larger plans above 80% quota use and smaller ones below 30%.

        Smaller suggestions must still leave 20% headroom over current usage.
        """
        subscription = session.get(Subscription, subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        self.subscription_repository.validate_read_scope(ctx, owner_id=subscription.user_id)

        usage = read_usage(session, self.usage_accessor, subscription.id)
        quota = subscription.quota_snapshot
        current = Offering(price=subscription.price_snapshot, quota=quota)

        ratio: Decimal | None = None
        if quota is not None and quota > 0:
            ratio = Decimal(usage) / Decimal(quota)

        direction = "none"
        suggestions: list[Plan] = []
        if ratio is not None and ratio > HIGH_USAGE_RATIO:
            direction = "upgrade"
            suggestions = [
                plan
                for plan in self._active_plans(session)
                if plan.id != subscription.plan_id and is_upgrade(current, self._offering(plan))
            ]
            suggestions.sort(key=lambda plan: self._offering(plan).rank())
            suggestions = suggestions[:MAX_UPGRADE_SUGGESTIONS]
        elif ratio is not None and ratio < LOW_USAGE_RATIO:
            direction = "downgrade"
            floor = Decimal(usage) * DOWNGRADE_HEADROOM
            suggestions = [
                plan
                for plan in self._active_plans(session)
                if plan.id != subscription.plan_id
                and is_downgrade(current, self._offering(plan))
                and (plan.quota is None or Decimal(plan.quota) >= floor)
            ]
            suggestions.sort(key=lambda plan: self._offering(plan).rank(), reverse=True)
            suggestions = suggestions[:MAX_DOWNGRADE_SUGGESTIONS]

        return PlanRecommendationRead(
            subscription_id=subscription.id,
            current_usage=usage,
            usage_percentage=(ratio * 100).quantize(Decimal("0.01")) if ratio is not None else None,
            direction=direction,
            plans=[PlanRead.model_validate(plan) for plan in suggestions],
        )

    def _ensure_no_live_subscriptions(self, session: Session, plan: Plan) -> None:
        live = session.scalar(
            select(func.count())
            .select_from(Subscription)
            .where(
                or_(Subscription.plan_id == plan.id, Subscription.pending_plan_id == plan.id),
                Subscription.status.in_(LIVE_STATUSES),
            )
        ) or 0
        if live > 0:
            raise PlanInUse(
                "Cannot deactivate plan with live or scheduled subscriptions",
                details={"plan_id": str(plan.id), "subscriptions": live},
            )

    @staticmethod
    def _active_plans(session: Session) -> list[Plan]:
        return list(session.scalars(select(Plan).where(Plan.is_active.is_(True))).all())

    @staticmethod
    def _offering(plan: Plan) -> Offering:
        return Offering(price=plan.price, quota=plan.quota)

    @staticmethod
    def _get_plan(session: Session, plan_id: uuid.UUID) -> Plan:
        plan = session.get(Plan, plan_id)
        if plan is None:
            raise PlanNotFound(plan_id)
        return plan

    @staticmethod
    def _emit_plan_event(event_type: str, plan: Plan, ctx: AuthContext) -> None:
        events.publish(
            {
                "event_type": event_type,
                "plan_id": str(plan.id),
                "price": str(plan.price),
                "is_active": plan.is_active,
                "correlation_id": ctx.correlation_id,
            }
        )


catalog_service = CatalogService()
