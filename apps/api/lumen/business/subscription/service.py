from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from opentelemetry import trace
from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session

from lumen import events
from lumen.business.billing.service import billing_service
from lumen.business.catalog.models import Plan
from lumen.business.subscription.cycle import (
    apply_discount,
    as_utc,
    convert_cycle_price,
    next_period_end,
    period_days,
    prorate,
    remaining_days,
)
from lumen.business.subscription.eligibility import (
    Offering,
    UsageAccessor,
    check_usage_fits,
    ensure_downgrade,
    ensure_upgrade,
)
from lumen.business.subscription.errors import (
    AlreadyCancelled,
    DuplicateSubscription,
    InvalidTransition,
    LifecycleError,
    PlanNotFound,
    PlanUnavailable,
    SubscriptionNotFound,
)
from lumen.business.subscription.models import Subscription, SubscriptionLog
from lumen.business.subscription.patches import (
    CancelPatch,
    ExpirePatch,
    PausePatch,
    PeriodRolloverPatch,
    PlanChangePatch,
    ResumePatch,
    ScheduledPlanChangePatch,
    TrialConversionPatch,
)
from lumen.business.subscription.repository import (
    BillingRecordGenerator,
    BillingRequest,
    LifecycleLogSink,
    PlanCatalog,
    SqlLifecycleLogSink,
    SqlPlanCatalog,
    SqlSubscriptionStore,
    SubscriptionRepository,
    SubscriptionStore,
)
from lumen.business.subscription.schemas import (
    CancelRequest,
    DowngradeRequest,
    PauseRequest,
    ProcessDueResponse,
    SubscriptionCreate,
    SubscriptionLogRead,
    SubscriptionRead,
    UpgradeRequest,
)
from lumen.business.usage.repository import SqlUsageAccessor
from lumen.context import bind_operation
from lumen.metrics import (
    observe_side_effect_failure,
    observe_sweep,
    observe_transition,
    observe_transition_rejected,
)
from lumen.platform.security.context import AuthContext
from lumen.platform.security.rls import is_admin_bypass

logger = logging.getLogger("lumen.subscriptions")
tracer = trace.get_tracer("lumen.subscriptions")


# Transitions driven by an explicit caller intent. The sweep adds
# trial -> active, active -> expired and paused -> active on its own schedule.
# An expired subscription may still be cancelled to close it out; it is never refunded.
VALID_SUBSCRIPTION_TRANSITIONS: dict[str, set[str]] = {
    "trial": {"active", "cancelled"},
    "active": {"paused", "cancelled", "expired"},
    "paused": {"active", "cancelled"},
    "cancelled": set(),
    "expired": {"cancelled"},
}

_REFUNDABLE_STATUSES = {"active", "paused"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _operation(action: str, ctx: AuthContext, subscription_id: uuid.UUID | None = None) -> Iterator[Any]:
    with bind_operation(action, ctx.user_id), tracer.start_as_current_span(f"subscription.{action}") as span:
        span.set_attribute("action", action)
        if ctx.correlation_id:
            span.set_attribute("correlation_id", ctx.correlation_id)
        if subscription_id is not None:
            span.set_attribute("subscription_id", str(subscription_id))
        try:
            yield span
        except LifecycleError as exc:
            observe_transition_rejected(action, exc.code)
            span.set_attribute("error.code", exc.code)
            logger.info(
                "subscription.rejected",
                extra={
                    "action": action,
                    "subscription_id": str(subscription_id) if subscription_id else None,
                    "error": exc.code,
                },
            )
            raise


@dataclass(slots=True)
class SubscriptionService:
    """Subscription lifecycle engine.

    Owns the state machine, derives period boundaries through the cycle
    calculator and decides upgrade/downgrade legality. Every mutation goes
    through ``SubscriptionStore.conditional_update`` guarded on the status the
    decision was made against, so a concurrent change surfaces as
    ``SubscriptionConflict`` instead of a lost update. Billing requests and
    lifecycle log entries are written after the transition commits; their
    failures are logged and never undo the transition.
    """

    plans: PlanCatalog = field(default_factory=SqlPlanCatalog)
    store: SubscriptionStore = field(default_factory=SqlSubscriptionStore)
    usage: UsageAccessor = field(default_factory=SqlUsageAccessor)
    billing: BillingRecordGenerator = field(default_factory=lambda: billing_service)
    log_sink: LifecycleLogSink = field(default_factory=SqlLifecycleLogSink)
    subscription_repository: SubscriptionRepository = field(default_factory=SubscriptionRepository)
    clock: Callable[[], datetime] = utcnow

    def create_subscription(self, session: Session, ctx: AuthContext, payload: SubscriptionCreate) -> SubscriptionRead:
        with _operation("create", ctx):
            plan = self.plans.get_plan(session, payload.plan_id)
            if not plan.is_active:
                raise PlanUnavailable(plan.id)

            user_id = payload.user_id if payload.user_id and is_admin_bypass(ctx) else ctx.user_id
            if self.store.get_active_for_user_and_plan(session, user_id, plan.id) is not None:
                raise DuplicateSubscription(user_id, plan.id)
            scheduled = self.store.get_pending_change_onto(session, user_id, plan.id)
            if scheduled is not None:
                raise DuplicateSubscription(user_id, plan.id, scheduled_by=scheduled.id)

            now = self._now()
            subscription = Subscription(
                user_id=user_id,
                plan_id=plan.id,
                billing_cycle=plan.billing_cycle,
                auto_renewal=payload.auto_renewal,
                discount_percentage=payload.discount_percentage,
                price_snapshot=plan.price,
                quota_snapshot=plan.quota,
                current_period_start=now,
            )
            if plan.trial_days > 0:
                trial_end = now + timedelta(days=plan.trial_days)
                subscription.status = "trial"
                subscription.trial_start = now
                subscription.trial_end = trial_end
                subscription.current_period_end = trial_end
                subscription.next_billing_date = trial_end
            else:
                period_end = next_period_end(now, plan.billing_cycle)
                subscription.status = "active"
                subscription.current_period_end = period_end
                subscription.next_billing_date = period_end

            subscription = self.store.create(session, subscription)

        billing_date = now if subscription.status == "active" else as_utc(subscription.next_billing_date)
        self._request_billing(
            session,
            subscription,
            kind="charge",
            amount=self._effective_price(subscription),
            billing_date=billing_date,
            next_billing_date=next_period_end(billing_date, subscription.billing_cycle),
            note=f"Initial charge for plan {plan.name}",
        )
        self._finish(
            session,
            ctx,
            subscription,
            "create",
            now,
            previous_plan_id=None,
            extra={"status": subscription.status, "trial_end": self._iso(subscription.trial_end)},
        )
        return SubscriptionRead.model_validate(subscription)

    def upgrade(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        payload: UpgradeRequest,
    ) -> SubscriptionRead:
        with _operation("upgrade", ctx, subscription_id):
            subscription = self._load(session, ctx, subscription_id, action="upgrade")
            if subscription.status != "active":
                raise InvalidTransition(subscription.status, "upgrade")

            target = self._get_target_plan(session, subscription, payload.target_plan_id)
            ensure_upgrade(self._offering(subscription), Offering(price=target.price, quota=target.quota))

            now = self._now()
            previous_plan_id = subscription.plan_id
            proration = prorate(
                self._price_in_current_cycle(subscription, target) - self._effective_price(subscription),
                remaining_days(now, as_utc(subscription.current_period_end)),
                period_days(as_utc(subscription.current_period_start), as_utc(subscription.current_period_end)),
            )
            patch = PlanChangePatch(
                plan_id=target.id,
                billing_cycle=target.billing_cycle,
                price_snapshot=target.price,
                quota_snapshot=target.quota,
            )
            subscription = self.store.conditional_update(session, subscription.id, "active", patch, action="upgrade")

        self._request_billing(
            session,
            subscription,
            kind="proration",
            amount=max(proration, Decimal("0.00")),
            billing_date=now,
            next_billing_date=self._as_utc_or_none(subscription.next_billing_date),
            note=f"Upgrade proration to plan {target.name}",
        )
        self._finish(
            session,
            ctx,
            subscription,
            "upgrade",
            now,
            previous_plan_id=previous_plan_id,
            reason=payload.reason,
            extra={"proration": str(proration)},
        )
        return SubscriptionRead.model_validate(subscription)

    def downgrade(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        payload: DowngradeRequest,
    ) -> SubscriptionRead:
        """Move an active subscription to a strictly smaller plan.

        By default the change is scheduled for the next billing date and
        applied by the period rollover; ``immediate`` applies it now and
        requests a refund record for the unused price difference. Usage must
        fit the target quota unless ``override_usage_check`` is set, in which
        case usage is not read at all.
        """
        with _operation("downgrade", ctx, subscription_id):
            subscription = self._load(session, ctx, subscription_id, action="downgrade")
            if subscription.status != "active":
                raise InvalidTransition(subscription.status, "downgrade")

            target = self._get_target_plan(session, subscription, payload.target_plan_id)
            target_offering = Offering(price=target.price, quota=target.quota)
            ensure_downgrade(self._offering(subscription), target_offering)
            usage = check_usage_fits(
                session,
                self.usage,
                subscription.id,
                target_offering,
                override=payload.override_usage_check,
            )

            now = self._now()
            previous_plan_id = subscription.plan_id
            credit = Decimal("0.00")
            if payload.immediate:
                credit = prorate(
                    self._effective_price(subscription) - self._price_in_current_cycle(subscription, target),
                    remaining_days(now, as_utc(subscription.current_period_end)),
                    period_days(as_utc(subscription.current_period_start), as_utc(subscription.current_period_end)),
                )
                effective_at = now
                patch: PlanChangePatch | ScheduledPlanChangePatch = PlanChangePatch(
                    plan_id=target.id,
                    billing_cycle=target.billing_cycle,
                    price_snapshot=target.price,
                    quota_snapshot=target.quota,
                )
            else:
                effective_at = as_utc(subscription.next_billing_date or subscription.current_period_end)
                patch = ScheduledPlanChangePatch(pending_plan_id=target.id, pending_change_effective_at=effective_at)
            subscription = self.store.conditional_update(session, subscription.id, "active", patch, action="downgrade")

        if payload.immediate:
            self._request_billing(
                session,
                subscription,
                kind="refund",
                amount=max(credit, Decimal("0.00")),
                billing_date=now,
                next_billing_date=self._as_utc_or_none(subscription.next_billing_date),
                note=f"Downgrade credit to plan {target.name}",
            )
        self._finish(
            session,
            ctx,
            subscription,
            "downgrade",
            effective_at,
            previous_plan_id=previous_plan_id,
            next_plan_id=target.id,
            reason=payload.reason,
            extra={
                "immediate": payload.immediate,
                "override_usage_check": payload.override_usage_check,
                "usage": usage,
            },
        )
        return SubscriptionRead.model_validate(subscription)

    def cancel(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        payload: CancelRequest,
    ) -> SubscriptionRead:
        with _operation("cancel", ctx, subscription_id):
            subscription = self._load(session, ctx, subscription_id, action="cancel")
            if subscription.status == "cancelled":
                raise AlreadyCancelled()
            self._assert_transition(subscription.status, "cancelled", "cancel")

            now = self._now()
            expected_status = subscription.status
            refund = Decimal("0.00")
            if payload.immediate and expected_status in _REFUNDABLE_STATUSES:
                refund = prorate(
                    self._effective_price(subscription),
                    remaining_days(now, as_utc(subscription.current_period_end)),
                    period_days(as_utc(subscription.current_period_start), as_utc(subscription.current_period_end)),
                )
            patch = CancelPatch(cancelled_at=now, cancel_reason=payload.reason)
            subscription = self.store.conditional_update(session, subscription.id, expected_status, patch, action="cancel")

        if refund > 0:
            self._request_billing(
                session,
                subscription,
                kind="refund",
                amount=refund,
                billing_date=now,
                next_billing_date=None,
                note="Prorated refund for immediate cancellation",
            )
        voided = self._void_upcoming_charges(session, subscription, now)
        self._finish(
            session,
            ctx,
            subscription,
            "cancel",
            now,
            previous_plan_id=subscription.plan_id,
            reason=payload.reason,
            extra={
                "immediate": payload.immediate,
                "refund": str(refund),
                "previous_status": expected_status,
                "voided_charges": voided,
            },
        )
        return SubscriptionRead.model_validate(subscription)

    def pause(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        payload: PauseRequest,
    ) -> SubscriptionRead:
        with _operation("pause", ctx, subscription_id):
            subscription = self._load(session, ctx, subscription_id, action="pause")
            self._assert_transition(subscription.status, "paused", "pause")

            now = self._now()
            patch = PausePatch(paused_at=now, pause_duration_days=payload.duration_days, pause_reason=payload.reason)
            subscription = self.store.conditional_update(session, subscription.id, "active", patch, action="pause")

        self._finish(
            session,
            ctx,
            subscription,
            "pause",
            now,
            previous_plan_id=subscription.plan_id,
            reason=payload.reason,
            extra={"duration_days": payload.duration_days},
        )
        return SubscriptionRead.model_validate(subscription)

    def resume(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> SubscriptionRead:
        with _operation("resume", ctx, subscription_id):
            subscription = self._load(session, ctx, subscription_id, action="resume")
            if subscription.status != "paused":
                raise InvalidTransition(subscription.status, "resume")
            now = self._now()
            subscription = self._apply_resume(session, subscription, now)

        self._finish(session, ctx, subscription, "resume", now, previous_plan_id=subscription.plan_id)
        return SubscriptionRead.model_validate(subscription)

    def renew(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> SubscriptionRead:
        """Request the charge for the upcoming period without touching dates.

        The billing collaborator keys records on the billing date, so calling
        this repeatedly for the same period yields a single record.
        """
        with _operation("renew", ctx, subscription_id):
            subscription = self._load(session, ctx, subscription_id, action="renew")
            if subscription.status != "active":
                raise InvalidTransition(subscription.status, "renew")

        now = self._now()
        billing_date = as_utc(subscription.next_billing_date or subscription.current_period_end)
        self._request_billing(
            session,
            subscription,
            kind="charge",
            amount=self._effective_price(subscription),
            billing_date=billing_date,
            next_billing_date=next_period_end(billing_date, subscription.billing_cycle),
            note="Renewal charge",
        )
        self._finish(
            session,
            ctx,
            subscription,
            "renew",
            billing_date,
            previous_plan_id=subscription.plan_id,
            extra={"requested_at": now.isoformat()},
        )
        return SubscriptionRead.model_validate(subscription)

    def process_due(
        self,
        session: Session,
        ctx: AuthContext | None = None,
        *,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> ProcessDueResponse:
        """Advance every subscription whose schedule has come due.

        Trials past their end activate, active subscriptions past their period
        end roll over (applying a scheduled downgrade) or expire when
        auto-renewal is off, and timed pauses resume. Each subscription is
        handled under its own conditional update; one failure never stops the
        sweep.
        """
        ctx = ctx or AuthContext.system()
        now = as_utc(now) if now is not None else self._now()
        result = ProcessDueResponse()
        started = time.perf_counter()

        with bind_operation("process_due", ctx.user_id), tracer.start_as_current_span("subscription.process_due") as span:
            trial_ids = self._due_ids(
                session,
                select(Subscription.id).where(and_(Subscription.status == "trial", Subscription.trial_end <= now)),
                limit,
            )
            for subscription_id in trial_ids:
                self._sweep_one(
                    session,
                    result,
                    "activated",
                    "activate",
                    subscription_id,
                    lambda sid: self._convert_trial(session, ctx, sid),
                )

            active_ids = self._due_ids(
                session,
                select(Subscription.id).where(
                    and_(Subscription.status == "active", Subscription.current_period_end <= now)
                ),
                limit,
            )
            for subscription_id in active_ids:
                self._sweep_one(
                    session,
                    result,
                    None,
                    "rollover",
                    subscription_id,
                    lambda sid: self._roll_or_expire(session, ctx, sid, now),
                )

            paused = session.scalars(
                select(Subscription).where(
                    and_(Subscription.status == "paused", Subscription.pause_duration_days.is_not(None))
                )
            ).all()
            paused_ids = [
                row.id
                for row in paused
                if row.paused_at is not None
                and as_utc(row.paused_at) + timedelta(days=row.pause_duration_days or 0) <= now
            ]
            if limit is not None:
                paused_ids = paused_ids[:limit]
            for subscription_id in paused_ids:
                self._sweep_one(
                    session,
                    result,
                    "resumed",
                    "resume",
                    subscription_id,
                    lambda sid: self._auto_resume(session, ctx, sid, now),
                )

            span.set_attribute("processed", result.activated + result.rolled_over + result.expired + result.resumed)
            span.set_attribute("failed", result.failed)

        observe_sweep(time.perf_counter() - started)
        logger.info(
            "subscription.sweep_completed",
            extra={
                "processed": result.activated + result.rolled_over + result.expired + result.resumed,
                "failed": result.failed,
            },
        )
        return result

    def list_subscriptions(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        status: str | None = None,
        plan_id: uuid.UUID | None = None,
    ) -> list[SubscriptionRead]:
        stmt: Select[tuple[Subscription]] = select(Subscription)
        if status is not None:
            stmt = stmt.where(Subscription.status == status)
        if plan_id is not None:
            stmt = stmt.where(Subscription.plan_id == plan_id)
        stmt = self.subscription_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(Subscription.created_at.desc())).all()
        return [SubscriptionRead.model_validate(row) for row in rows]

    def get_subscription(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> SubscriptionRead:
        return SubscriptionRead.model_validate(self._load(session, ctx, subscription_id, action="read", write=False))

    def list_logs(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> list[SubscriptionLogRead]:
        subscription = self._load(session, ctx, subscription_id, action="read", write=False)
        rows = session.scalars(
            select(SubscriptionLog)
            .where(SubscriptionLog.subscription_id == subscription.id)
            .order_by(SubscriptionLog.created_at.asc())
        ).all()
        return [SubscriptionLogRead.model_validate(row) for row in rows]

    def _convert_trial(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> None:
        subscription = self._require(session, subscription_id)
        # first paid period starts at trial end; missed periods are caught up by the rollover pass
        start = as_utc(subscription.trial_end or subscription.current_period_end)
        end = next_period_end(start, subscription.billing_cycle)
        patch = TrialConversionPatch(current_period_start=start, current_period_end=end, next_billing_date=end)
        subscription = self.store.conditional_update(session, subscription.id, "trial", patch, action="activate")

        self._request_billing(
            session,
            subscription,
            kind="charge",
            amount=self._effective_price(subscription),
            billing_date=start,
            next_billing_date=end,
            note="First charge after trial",
        )
        self._finish(session, ctx, subscription, "activate", start, previous_plan_id=subscription.plan_id)

    def _roll_or_expire(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID, now: datetime) -> str:
        subscription = self._require(session, subscription_id)
        previous_plan_id = subscription.plan_id

        if not subscription.auto_renewal:
            subscription = self.store.conditional_update(session, subscription.id, "active", ExpirePatch(), action="expire")
            self._finish(
                session,
                ctx,
                subscription,
                "expire",
                as_utc(subscription.current_period_end),
                previous_plan_id=previous_plan_id,
            )
            return "expired"

        plan_id = subscription.plan_id
        billing_cycle = subscription.billing_cycle
        price = subscription.price_snapshot
        quota = subscription.quota_snapshot
        extra: dict[str, Any] | None = None
        pending_at = self._as_utc_or_none(subscription.pending_change_effective_at)
        if subscription.pending_plan_id is not None and pending_at is not None and pending_at <= now:
            target, dropped = self._applicable_pending_plan(session, subscription)
            if target is not None:
                plan_id, billing_cycle, price, quota = target.id, target.billing_cycle, target.price, target.quota
            else:
                extra = {"pending_plan_id": str(subscription.pending_plan_id), "pending_change_dropped": dropped}

        start, end = self._advance_period(as_utc(subscription.current_period_end), billing_cycle, now)
        patch = PeriodRolloverPatch(
            current_period_start=start,
            current_period_end=end,
            next_billing_date=end,
            plan_id=plan_id,
            billing_cycle=billing_cycle,
            price_snapshot=price,
            quota_snapshot=quota,
        )
        subscription = self.store.conditional_update(session, subscription.id, "active", patch, action="rollover")

        self._request_billing(
            session,
            subscription,
            kind="charge",
            amount=self._effective_price(subscription),
            billing_date=start,
            next_billing_date=end,
            note="Period renewal",
        )
        self._finish(session, ctx, subscription, "rollover", start, previous_plan_id=previous_plan_id, extra=extra)
        return "rolled_over"

    def _applicable_pending_plan(self, session: Session, subscription: Subscription) -> tuple[Plan | None, str | None]:
        """Resolve a due scheduled plan change, or say why it can no longer apply.

        A dropped change leaves the subscription renewing on its current plan;
        the rollover patch clears the pending fields either way.
        """
        reason: str | None = None
        target: Plan | None = None
        try:
            target = self.plans.get_plan(session, subscription.pending_plan_id)
        except PlanNotFound:
            reason = "plan_missing"
        if target is not None and not target.is_active:
            reason = "plan_unavailable"
        elif target is not None:
            held = self.store.get_active_for_user_and_plan(session, subscription.user_id, target.id)
            if held is not None and held.id != subscription.id:
                reason = "duplicate_subscription"
        if reason is None:
            return target, None

        logger.warning(
            "subscription.pending_change_dropped",
            extra={
                "subscription_id": str(subscription.id),
                "pending_plan_id": str(subscription.pending_plan_id),
                "reason": reason,
            },
        )
        return None, reason

    def _auto_resume(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID, now: datetime) -> None:
        subscription = self._require(session, subscription_id)
        subscription = self._apply_resume(session, subscription, now)
        self._finish(
            session,
            ctx,
            subscription,
            "resume",
            now,
            previous_plan_id=subscription.plan_id,
            extra={"automatic": True},
        )

    def _apply_resume(self, session: Session, subscription: Subscription, now: datetime) -> Subscription:
        period_end = next_period_end(now, subscription.billing_cycle)
        patch = ResumePatch(current_period_start=now, current_period_end=period_end, next_billing_date=period_end)
        return self.store.conditional_update(session, subscription.id, "paused", patch, action="resume")

    def _sweep_one(
        self,
        session: Session,
        result: ProcessDueResponse,
        counter: str | None,
        action: str,
        subscription_id: uuid.UUID,
        handler: Callable[[uuid.UUID], str | None],
    ) -> None:
        try:
            outcome = handler(subscription_id)
        except LifecycleError as exc:
            session.rollback()
            result.skipped += 1
            logger.warning(
                "subscription.sweep_skipped",
                extra={"subscription_id": str(subscription_id), "action": action, "error": exc.code},
            )
            return
        except Exception as exc:
            session.rollback()
            result.failed += 1
            logger.exception(
                "subscription.sweep_failed",
                extra={"subscription_id": str(subscription_id), "action": action, "error": str(exc)[:500]},
            )
            return

        name = outcome or counter
        if name is not None:
            setattr(result, name, getattr(result, name) + 1)

    @staticmethod
    def _due_ids(session: Session, stmt: Select[tuple[uuid.UUID]], limit: int | None) -> list[uuid.UUID]:
        stmt = stmt.order_by(Subscription.created_at.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.scalars(stmt).all())

    @staticmethod
    def _advance_period(start: datetime, cycle: str, now: datetime) -> tuple[datetime, datetime]:
        end = next_period_end(start, cycle)
        while end <= now:
            start, end = end, next_period_end(end, cycle)
        return start, end

    def _load(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        *,
        action: str,
        write: bool = True,
    ) -> Subscription:
        subscription = self._require(session, subscription_id)
        if write:
            self.subscription_repository.validate_write_scope(ctx, owner_id=subscription.user_id, action=action)
        else:
            self.subscription_repository.validate_read_scope(ctx, owner_id=subscription.user_id, action=action)
        return subscription

    def _require(self, session: Session, subscription_id: uuid.UUID) -> Subscription:
        subscription = self.store.get_by_id(session, subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        return subscription

    def _get_target_plan(self, session: Session, subscription: Subscription, plan_id: uuid.UUID) -> Plan:
        target = self.plans.get_plan(session, plan_id)
        if not target.is_active:
            raise PlanUnavailable(target.id)
        if target.id != subscription.plan_id:
            existing = self.store.get_active_for_user_and_plan(session, subscription.user_id, target.id)
            if existing is not None:
                raise DuplicateSubscription(subscription.user_id, target.id)
        return target

    @staticmethod
    def _assert_transition(current: str, target: str, action: str) -> None:
        allowed = VALID_SUBSCRIPTION_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise InvalidTransition(current, action)

    def _request_billing(
        self,
        session: Session,
        subscription: Subscription,
        *,
        kind: str,
        amount: Decimal,
        billing_date: datetime,
        next_billing_date: datetime | None,
        note: str,
    ) -> None:
        request = BillingRequest(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            kind=kind,
            amount=amount,
            billing_date=billing_date,
            next_billing_date=next_billing_date,
            note=note,
        )
        try:
            self.billing.request_billing_record(session, request)
        except Exception as exc:
            session.rollback()
            observe_side_effect_failure("billing")
            logger.warning(
                "subscription.billing_request_failed",
                extra={"subscription_id": str(subscription.id), "action": kind, "error": str(exc)[:500]},
            )

    def _void_upcoming_charges(self, session: Session, subscription: Subscription, cancelled_at: datetime) -> int:
        try:
            return self.billing.void_pending_charges(session, subscription.id, cancelled_at)
        except Exception as exc:
            session.rollback()
            observe_side_effect_failure("billing")
            logger.warning(
                "subscription.billing_void_failed",
                extra={"subscription_id": str(subscription.id), "action": "cancel", "error": str(exc)[:500]},
            )
            return 0

    def _finish(
        self,
        session: Session,
        ctx: AuthContext,
        subscription: Subscription,
        action: str,
        effective_date: datetime,
        *,
        previous_plan_id: uuid.UUID | None,
        next_plan_id: uuid.UUID | None = None,
        reason: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        metadata: dict[str, Any] = {
            "previous_plan_id": str(previous_plan_id) if previous_plan_id else None,
            "next_plan_id": str(next_plan_id or subscription.plan_id),
            "effective_date": effective_date.isoformat(),
            "reason": reason,
            "actor": ctx.user_id,
            "correlation_id": ctx.correlation_id,
        }
        if extra:
            metadata.update(extra)

        try:
            self.log_sink.append(session, subscription.id, action, metadata, self._now())
        except Exception as exc:
            session.rollback()
            observe_side_effect_failure("log")
            logger.warning(
                "subscription.log_append_failed",
                extra={"subscription_id": str(subscription.id), "action": action, "error": str(exc)[:500]},
            )

        observe_transition(action)
        logger.info(
            "subscription.transition",
            extra={
                "subscription_id": str(subscription.id),
                "action": action,
                "status": subscription.status,
                "plan_id": str(subscription.plan_id),
            },
        )
        self._emit_subscription_event(f"subscription.{action}", subscription, ctx, metadata)

    def _emit_subscription_event(
        self,
        event_type: str,
        subscription: Subscription,
        ctx: AuthContext,
        metadata: dict[str, Any],
    ) -> None:
        events.publish(
            {
                "event_type": event_type,
                "subscription_id": str(subscription.id),
                "user_id": subscription.user_id,
                "plan_id": str(subscription.plan_id),
                "status": subscription.status,
                "period_start": self._iso(subscription.current_period_start),
                "period_end": self._iso(subscription.current_period_end),
                "metadata": metadata,
                "correlation_id": ctx.correlation_id,
            }
        )

    def _now(self) -> datetime:
        return as_utc(self.clock())

    @staticmethod
    def _offering(subscription: Subscription) -> Offering:
        return Offering(price=subscription.price_snapshot, quota=subscription.quota_snapshot)

    @staticmethod
    def _effective_price(subscription: Subscription) -> Decimal:
        return apply_discount(subscription.price_snapshot, subscription.discount_percentage)

    @staticmethod
    def _price_in_current_cycle(subscription: Subscription, target: Plan) -> Decimal:
        # proration runs over the current period, so the target price is restated in its cycle
        discounted = apply_discount(target.price, subscription.discount_percentage)
        return convert_cycle_price(discounted, target.billing_cycle, subscription.billing_cycle)

    @staticmethod
    def _as_utc_or_none(value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    @staticmethod
    def _iso(value: datetime | None) -> str | None:
        return as_utc(value).isoformat() if value is not None else None


subscription_service = SubscriptionService()
