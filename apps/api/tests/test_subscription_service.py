from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import lumen.models  # noqa: F401
from lumen import events
from lumen.business.billing.models import BillingRecord
from lumen.business.catalog.models import Plan
from lumen.business.catalog.schemas import PlanCreate
from lumen.business.catalog.service import CatalogService
from lumen.business.subscription.cycle import as_utc
from lumen.business.subscription.eligibility import UsageUnavailable
from lumen.business.subscription.errors import (
    AlreadyCancelled,
    DependencyUnavailable,
    DuplicateSubscription,
    InvalidTransition,
    NotAnUpgrade,
    PlanUnavailable,
    SubscriptionConflict,
    UsageExceedsTarget,
)
from lumen.business.subscription.models import Subscription, SubscriptionLog
from lumen.business.subscription.patches import CancelPatch
from lumen.business.subscription.repository import SqlSubscriptionStore
from lumen.business.subscription.schemas import (
    CancelRequest,
    DowngradeRequest,
    PauseRequest,
    SubscriptionCreate,
    UpgradeRequest,
)
from lumen.business.subscription.service import SubscriptionService
from lumen.business.usage.schemas import UsageRecordCreate
from lumen.business.usage.service import UsageService
from lumen.core.database import Base
from lumen.platform.security.context import AuthContext
from lumen.platform.security.errors import AuthorizationError


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, value: datetime) -> None:
        self.value = value

    def __call__(self) -> datetime:
        return self.value


class BrokenLogSink:
    def append(self, session, subscription_id, action, metadata, timestamp):  # type: ignore[no-untyped-def]
        raise RuntimeError("log store offline")


class BrokenBilling:
    def request_billing_record(self, session, request):  # type: ignore[no-untyped-def]
        raise RuntimeError("billing offline")

    def void_pending_charges(self, session, subscription_id, after):  # type: ignore[no-untyped-def]
        raise RuntimeError("billing offline")


class DownUsage:
    def get_current_usage(self, session, subscription_id):  # type: ignore[no-untyped-def]
        raise UsageUnavailable("usage service timed out")


class RacingStore(SqlSubscriptionStore):
    """Lets a concurrent cancel commit between the service's read and its write."""

    def __init__(self) -> None:
        self.raced = False

    def conditional_update(self, session, subscription_id, expected_status, patch, *, action):  # type: ignore[no-untyped-def]
        if not self.raced:
            self.raced = True
            super().conditional_update(
                session,
                subscription_id,
                "active",
                CancelPatch(cancelled_at=NOW, cancel_reason="concurrent"),
                action="cancel",
            )
        return super().conditional_update(session, subscription_id, expected_status, patch, action=action)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_globals() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


@pytest.fixture()
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture()
def service(clock: Clock) -> SubscriptionService:
    return SubscriptionService(clock=clock)


def _ctx(user_id: str = "user-1") -> AuthContext:
    return AuthContext(user_id=user_id, correlation_id="corr-sub")


def _admin() -> AuthContext:
    return AuthContext(user_id="admin-1", correlation_id="corr-admin", is_super_admin=True, roles=["admin"])


def _plan(
    session: Session,
    name: str,
    price: str,
    quota: int | None,
    *,
    cycle: str = "monthly",
    trial_days: int = 0,
    is_active: bool = True,
):  # type: ignore[no-untyped-def]
    return CatalogService().create_plan(
        session,
        _admin(),
        PlanCreate(
            name=name,
            price=Decimal(price),
            quota=quota,
            billing_cycle=cycle,
            trial_days=trial_days,
            is_active=is_active,
        ),
    )


def _billing_records(session: Session, subscription_id: uuid.UUID, kind: str | None = None) -> list[BillingRecord]:
    stmt = select(BillingRecord).where(BillingRecord.subscription_id == subscription_id)
    if kind is not None:
        stmt = stmt.where(BillingRecord.kind == kind)
    return list(session.scalars(stmt.order_by(BillingRecord.billing_date.asc())).all())


def _log_actions(session: Session, subscription_id: uuid.UUID) -> list[str]:
    rows = session.scalars(
        select(SubscriptionLog)
        .where(SubscriptionLog.subscription_id == subscription_id)
        .order_by(SubscriptionLog.created_at.asc())
    ).all()
    return [row.action for row in rows]


def test_create_without_trial_starts_active_period_and_bills(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)

    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))

    assert subscription.status == "active"
    assert subscription.user_id == "user-1"
    assert subscription.quota_snapshot == 100
    assert as_utc(subscription.current_period_start) == NOW
    assert as_utc(subscription.current_period_end) == datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)
    assert as_utc(subscription.next_billing_date) == datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)

    charges = _billing_records(db_session, subscription.id, "charge")
    assert len(charges) == 1
    assert charges[0].amount == Decimal("10.00")
    assert charges[0].status == "pending"
    assert charges[0].invoice_number == "INV-20240301-00001"

    assert _log_actions(db_session, subscription.id) == ["create"]
    created = [item for item in events.published_events if item.get("event_type") == "subscription.create"]
    assert created and created[-1]["correlation_id"] == "corr-sub"


def test_create_with_trial_defers_first_charge_to_trial_end(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Trial Plan", "25.00", 500, trial_days=14)

    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))

    trial_end = NOW + timedelta(days=14)
    assert subscription.status == "trial"
    assert as_utc(subscription.trial_end) == trial_end
    assert as_utc(subscription.current_period_end) == trial_end
    assert as_utc(subscription.next_billing_date) == trial_end

    charges = _billing_records(db_session, subscription.id, "charge")
    assert len(charges) == 1
    assert as_utc(charges[0].billing_date) == trial_end


def test_create_rejects_duplicate_live_subscription(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)
    service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))

    with pytest.raises(DuplicateSubscription):
        service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))

    other = service.create_subscription(db_session, _ctx("user-2"), SubscriptionCreate(plan_id=plan.id))
    assert other.status == "active"


def test_create_rejects_inactive_plan(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Retired", "10.00", 100, is_active=False)

    with pytest.raises(PlanUnavailable):
        service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))

    assert db_session.scalar(select(Subscription)) is None


def test_create_on_behalf_of_user_requires_admin(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)

    own = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id, user_id="someone-else"))
    assert own.user_id == "user-1"

    delegated = service.create_subscription(db_session, _admin(), SubscriptionCreate(plan_id=plan.id, user_id="user-9"))
    assert delegated.user_id == "user-9"


def test_upgrade_to_larger_plan_prorates_and_switches_immediately(db_session: Session, service: SubscriptionService) -> None:
    basic = _plan(db_session, "Basic", "10.00", 100)
    pro = _plan(db_session, "Pro", "20.00", 200)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=basic.id))

    upgraded = service.upgrade(db_session, _ctx(), subscription.id, UpgradeRequest(target_plan_id=pro.id, reason="growth"))

    assert upgraded.plan_id == pro.id
    assert upgraded.quota_snapshot == 200
    assert upgraded.price_snapshot == Decimal("20.00")
    assert as_utc(upgraded.current_period_end) == datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)

    prorations = _billing_records(db_session, subscription.id, "proration")
    assert len(prorations) == 1
    assert prorations[0].amount == Decimal("10.00")

    logs = service.list_logs(db_session, _ctx(), subscription.id)
    assert [log.action for log in logs] == ["create", "upgrade"]
    assert logs[-1].details is not None
    assert logs[-1].details["previous_plan_id"] == str(basic.id)
    assert logs[-1].details["next_plan_id"] == str(pro.id)
    assert logs[-1].details["reason"] == "growth"


def test_upgrade_to_smaller_or_identical_plan_is_rejected(db_session: Session, service: SubscriptionService) -> None:
    basic = _plan(db_session, "Basic", "10.00", 100)
    twin = _plan(db_session, "Basic Twin", "10.00", 100)
    pro = _plan(db_session, "Pro", "20.00", 200)
    on_pro = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=pro.id))
    on_basic = service.create_subscription(db_session, _ctx("user-2"), SubscriptionCreate(plan_id=basic.id))

    with pytest.raises(NotAnUpgrade):
        service.upgrade(db_session, _ctx(), on_pro.id, UpgradeRequest(target_plan_id=basic.id))
    with pytest.raises(NotAnUpgrade):
        service.upgrade(db_session, _ctx("user-2"), on_basic.id, UpgradeRequest(target_plan_id=twin.id))

    assert service.get_subscription(db_session, _ctx(), on_pro.id).plan_id == pro.id
    assert _billing_records(db_session, on_pro.id, "proration") == []


def test_upgrade_requires_active_status(db_session: Session, service: SubscriptionService) -> None:
    basic = _plan(db_session, "Basic", "10.00", 100)
    pro = _plan(db_session, "Pro", "20.00", 200)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=basic.id))
    service.pause(db_session, _ctx(), subscription.id, PauseRequest(duration_days=5))

    with pytest.raises(InvalidTransition) as exc_info:
        service.upgrade(db_session, _ctx(), subscription.id, UpgradeRequest(target_plan_id=pro.id))

    assert exc_info.value.details == {"status": "paused", "action": "upgrade"}


def test_downgrade_over_target_quota_needs_override(db_session: Session, service: SubscriptionService) -> None:
    big = _plan(db_session, "Big", "20.00", 100)
    small = _plan(db_session, "Small", "10.00", 40)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=big.id))
    UsageService().record_usage(db_session, _ctx(), subscription.id, UsageRecordCreate(amount=50))

    with pytest.raises(UsageExceedsTarget):
        service.downgrade(db_session, _ctx(), subscription.id, DowngradeRequest(target_plan_id=small.id))

    downgraded = service.downgrade(
        db_session,
        _ctx(),
        subscription.id,
        DowngradeRequest(target_plan_id=small.id, override_usage_check=True),
    )

    # deferred by default: current plan stays until the next billing date
    assert downgraded.plan_id == big.id
    assert downgraded.pending_plan_id == small.id
    assert as_utc(downgraded.pending_change_effective_at) == datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)
    assert _billing_records(db_session, subscription.id, "refund") == []

    log = service.list_logs(db_session, _ctx(), subscription.id)[-1]
    assert log.action == "downgrade"
    assert log.details is not None
    assert log.details["next_plan_id"] == str(small.id)
    assert log.details["effective_date"] == "2024-04-01T12:00:00+00:00"


def test_immediate_downgrade_switches_plan_and_credits_difference(db_session: Session, service: SubscriptionService) -> None:
    big = _plan(db_session, "Big", "20.00", 100)
    small = _plan(db_session, "Small", "10.00", 40)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=big.id))
    UsageService().record_usage(db_session, _ctx(), subscription.id, UsageRecordCreate(amount=30))

    downgraded = service.downgrade(
        db_session,
        _ctx(),
        subscription.id,
        DowngradeRequest(target_plan_id=small.id, immediate=True),
    )

    assert downgraded.plan_id == small.id
    assert downgraded.quota_snapshot == 40
    assert downgraded.pending_plan_id is None
    refunds = _billing_records(db_session, subscription.id, "refund")
    assert len(refunds) == 1
    assert refunds[0].amount == Decimal("10.00")


def test_downgrade_fails_closed_when_usage_unavailable(db_session: Session, clock: Clock) -> None:
    service = SubscriptionService(usage=DownUsage(), clock=clock)
    big = _plan(db_session, "Big", "20.00", 100)
    small = _plan(db_session, "Small", "10.00", 40)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=big.id))

    with pytest.raises(DependencyUnavailable):
        service.downgrade(db_session, _ctx(), subscription.id, DowngradeRequest(target_plan_id=small.id))

    current = service.get_subscription(db_session, _ctx(), subscription.id)
    assert current.plan_id == big.id
    assert current.pending_plan_id is None
    assert _log_actions(db_session, subscription.id) == ["create"]


def test_immediate_cancel_refunds_remaining_days(db_session: Session, service: SubscriptionService, clock: Clock) -> None:
    plan = _plan(db_session, "Monthly Ten", "10.00", 100)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))

    clock.value = NOW + timedelta(days=10)
    cancelled = service.cancel(db_session, _ctx(), subscription.id, CancelRequest(reason="too expensive", immediate=True))

    assert cancelled.status == "cancelled"
    assert as_utc(cancelled.cancelled_at) == NOW + timedelta(days=10)
    assert cancelled.auto_renewal is False
    assert cancelled.next_billing_date is None
    assert cancelled.cancel_reason == "too expensive"

    refunds = _billing_records(db_session, subscription.id, "refund")
    assert len(refunds) == 1
    # 21 of 31 days left
    assert refunds[0].amount == Decimal("6.77")


def test_cancel_without_immediate_emits_no_refund(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))

    cancelled = service.cancel(db_session, _ctx(), subscription.id, CancelRequest())

    assert cancelled.status == "cancelled"
    assert _billing_records(db_session, subscription.id, "refund") == []


def test_second_cancel_reports_already_cancelled_without_side_effects(db_session: Session, service: SubscriptionService, clock: Clock) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))
    first = service.cancel(db_session, _ctx(), subscription.id, CancelRequest(immediate=True))
    logs_before = _log_actions(db_session, subscription.id)
    billing_before = len(_billing_records(db_session, subscription.id))
    events_before = len(events.published_events)

    clock.value = NOW + timedelta(days=1)
    with pytest.raises(AlreadyCancelled) as exc_info:
        service.cancel(db_session, _ctx(), subscription.id, CancelRequest(immediate=True))

    assert exc_info.value.code == "already_cancelled"
    second_read = service.get_subscription(db_session, _ctx(), subscription.id)
    assert second_read.cancelled_at == first.cancelled_at
    assert second_read.updated_at == first.updated_at
    assert _log_actions(db_session, subscription.id) == logs_before
    assert len(_billing_records(db_session, subscription.id)) == billing_before
    assert len(events.published_events) == events_before


def test_cancel_of_paused_subscription_clears_pause(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))
    service.pause(db_session, _ctx(), subscription.id, PauseRequest(duration_days=10))

    cancelled = service.cancel(db_session, _ctx(), subscription.id, CancelRequest())

    assert cancelled.status == "cancelled"
    assert cancelled.paused_at is None
    assert cancelled.pause_duration_days is None


def test_pause_then_resume_recomputes_billing_from_resume_time(db_session: Session, service: SubscriptionService, clock: Clock) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))

    clock.value = NOW + timedelta(days=2)
    paused = service.pause(db_session, _ctx(), subscription.id, PauseRequest(duration_days=10, reason="vacation"))
    assert paused.status == "paused"
    assert as_utc(paused.paused_at) == NOW + timedelta(days=2)
    assert paused.pause_duration_days == 10

    with pytest.raises(InvalidTransition):
        service.pause(db_session, _ctx(), subscription.id, PauseRequest(duration_days=10))

    clock.value = NOW + timedelta(days=5)
    resumed = service.resume(db_session, _ctx(), subscription.id)

    assert resumed.status == "active"
    assert resumed.paused_at is None
    assert resumed.pause_duration_days is None
    assert as_utc(resumed.current_period_start) == NOW + timedelta(days=5)
    assert as_utc(resumed.next_billing_date) == datetime(2024, 4, 6, 12, 0, tzinfo=timezone.utc)
    assert _log_actions(db_session, subscription.id) == ["create", "pause", "resume"]

    with pytest.raises(InvalidTransition):
        service.resume(db_session, _ctx(), subscription.id)


def test_renew_bills_upcoming_period_once(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))

    first = service.renew(db_session, _ctx(), subscription.id)
    service.renew(db_session, _ctx(), subscription.id)

    renewal_date = datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)
    charges = _billing_records(db_session, subscription.id, "charge")
    assert [as_utc(item.billing_date) for item in charges] == [NOW, renewal_date]
    # dates are left to the period rollover
    assert as_utc(first.current_period_end) == renewal_date
    assert _log_actions(db_session, subscription.id).count("renew") == 2


def test_renew_requires_active_status(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))
    service.cancel(db_session, _ctx(), subscription.id, CancelRequest())

    with pytest.raises(InvalidTransition):
        service.renew(db_session, _ctx(), subscription.id)


def test_side_effect_failures_do_not_undo_transition(db_session: Session, clock: Clock) -> None:
    service = SubscriptionService(billing=BrokenBilling(), log_sink=BrokenLogSink(), clock=clock)
    plan = _plan(db_session, "Basic", "10.00", 100)

    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))
    cancelled = service.cancel(db_session, _ctx(), subscription.id, CancelRequest(immediate=True))

    assert cancelled.status == "cancelled"
    assert _billing_records(db_session, subscription.id) == []
    assert _log_actions(db_session, subscription.id) == []
    assert [item["event_type"] for item in events.published_events if item["event_type"].startswith("subscription.")] == [
        "subscription.create",
        "subscription.cancel",
    ]


def test_concurrent_cancel_makes_upgrade_fail(db_session: Session, clock: Clock) -> None:
    service = SubscriptionService(store=RacingStore(), clock=clock)
    basic = _plan(db_session, "Basic", "10.00", 100)
    pro = _plan(db_session, "Pro", "20.00", 200)
    subscription = SubscriptionService(clock=clock).create_subscription(
        db_session, _ctx(), SubscriptionCreate(plan_id=basic.id)
    )

    with pytest.raises(SubscriptionConflict) as exc_info:
        service.upgrade(db_session, _ctx(), subscription.id, UpgradeRequest(target_plan_id=pro.id))

    assert isinstance(exc_info.value, InvalidTransition)
    current = db_session.get(Subscription, subscription.id)
    assert current is not None
    assert current.status == "cancelled"
    assert current.plan_id == basic.id
    assert _billing_records(db_session, subscription.id, "proration") == []


def test_other_users_cannot_touch_subscription(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))

    with pytest.raises(AuthorizationError):
        service.cancel(db_session, _ctx("intruder"), subscription.id, CancelRequest())
    with pytest.raises(AuthorizationError):
        service.get_subscription(db_session, _ctx("intruder"), subscription.id)

    assert service.list_subscriptions(db_session, _ctx("intruder")) == []
    assert len(service.list_subscriptions(db_session, _admin())) == 1


def test_process_due_converts_expired_trials(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Trial Plan", "25.00", 500, trial_days=14)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))

    result = service.process_due(db_session, now=NOW + timedelta(days=15))

    assert result.activated == 1
    assert result.failed == 0
    current = service.get_subscription(db_session, _ctx(), subscription.id)
    trial_end = NOW + timedelta(days=14)
    assert current.status == "active"
    assert as_utc(current.current_period_start) == trial_end
    assert as_utc(current.current_period_end) == datetime(2024, 4, 15, 12, 0, tzinfo=timezone.utc)
    # the charge requested at creation is reused, not duplicated
    assert len(_billing_records(db_session, subscription.id, "charge")) == 1
    assert _log_actions(db_session, subscription.id) == ["create", "activate"]


def test_process_due_rolls_period_and_applies_scheduled_downgrade(db_session: Session, service: SubscriptionService) -> None:
    big = _plan(db_session, "Big", "20.00", 100)
    small = _plan(db_session, "Small", "10.00", 40)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=big.id))
    service.downgrade(db_session, _ctx(), subscription.id, DowngradeRequest(target_plan_id=small.id))

    result = service.process_due(db_session, now=datetime(2024, 4, 1, 13, 0, tzinfo=timezone.utc))

    assert result.rolled_over == 1
    current = service.get_subscription(db_session, _ctx(), subscription.id)
    assert current.status == "active"
    assert current.plan_id == small.id
    assert current.quota_snapshot == 40
    assert current.pending_plan_id is None
    assert as_utc(current.current_period_start) == datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)
    assert as_utc(current.current_period_end) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    charges = _billing_records(db_session, subscription.id, "charge")
    assert [item.amount for item in charges] == [Decimal("20.00"), Decimal("10.00")]


def test_process_due_expires_subscriptions_without_auto_renewal(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)
    subscription = service.create_subscription(
        db_session,
        _ctx(),
        SubscriptionCreate(plan_id=plan.id, auto_renewal=False),
    )

    result = service.process_due(db_session, now=datetime(2024, 4, 2, tzinfo=timezone.utc))

    assert result.expired == 1
    current = service.get_subscription(db_session, _ctx(), subscription.id)
    assert current.status == "expired"
    assert current.next_billing_date is None
    assert len(_billing_records(db_session, subscription.id, "charge")) == 1


def test_process_due_resumes_elapsed_pauses(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)
    timed = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))
    open_ended = service.create_subscription(db_session, _ctx("user-2"), SubscriptionCreate(plan_id=plan.id))
    service.pause(db_session, _ctx(), timed.id, PauseRequest(duration_days=10))
    service.pause(db_session, _ctx("user-2"), open_ended.id, PauseRequest())

    resumed_at = NOW + timedelta(days=11)
    result = service.process_due(db_session, now=resumed_at)

    assert result.resumed == 1
    timed_now = service.get_subscription(db_session, _ctx(), timed.id)
    assert timed_now.status == "active"
    assert as_utc(timed_now.current_period_start) == resumed_at
    assert service.get_subscription(db_session, _ctx("user-2"), open_ended.id).status == "paused"


def test_status_timestamps_stay_consistent(db_session: Session, service: SubscriptionService, clock: Clock) -> None:
    basic = _plan(db_session, "Basic", "10.00", 100)
    pro = _plan(db_session, "Pro", "20.00", 200)
    trial = _plan(db_session, "Trial Plan", "5.00", 10, trial_days=7)

    first = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=basic.id))
    second = service.create_subscription(db_session, _ctx("user-2"), SubscriptionCreate(plan_id=basic.id))
    third = service.create_subscription(db_session, _ctx("user-3"), SubscriptionCreate(plan_id=trial.id))
    service.upgrade(db_session, _ctx(), first.id, UpgradeRequest(target_plan_id=pro.id))
    service.pause(db_session, _ctx("user-2"), second.id, PauseRequest(duration_days=3))
    clock.value = NOW + timedelta(days=1)
    service.cancel(db_session, _ctx(), first.id, CancelRequest(immediate=True))
    service.cancel(db_session, _ctx("user-3"), third.id, CancelRequest())
    service.process_due(db_session, now=NOW + timedelta(days=40))

    for row in db_session.scalars(select(Subscription)).all():
        assert (row.status == "cancelled") == (row.cancelled_at is not None)
        assert (row.status == "paused") == (row.paused_at is not None)
        assert as_utc(row.current_period_end) >= as_utc(row.current_period_start)


def test_create_rejects_plan_already_scheduled_by_a_downgrade(db_session: Session, service: SubscriptionService) -> None:
    big = _plan(db_session, "Big", "20.00", 100)
    small = _plan(db_session, "Small", "10.00", 40)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=big.id))
    service.downgrade(db_session, _ctx(), subscription.id, DowngradeRequest(target_plan_id=small.id))

    with pytest.raises(DuplicateSubscription) as exc_info:
        service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=small.id))

    assert exc_info.value.details["scheduled_by"] == str(subscription.id)
    assert service.list_subscriptions(db_session, _ctx(), plan_id=small.id) == []


def test_rollover_drops_scheduled_change_onto_a_plan_already_held(db_session: Session, service: SubscriptionService) -> None:
    big = _plan(db_session, "Big", "20.00", 100)
    small = _plan(db_session, "Small", "10.00", 40)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=big.id))
    service.downgrade(db_session, _ctx(), subscription.id, DowngradeRequest(target_plan_id=small.id))
    # a live subscription on the target that predates the scheduled-change check
    held = service.create_subscription(db_session, _ctx("user-2"), SubscriptionCreate(plan_id=small.id))
    db_session.execute(update(Subscription).where(Subscription.id == held.id).values(user_id="user-1"))
    db_session.commit()

    result = service.process_due(db_session, now=datetime(2024, 4, 1, 13, 0, tzinfo=timezone.utc))

    assert result.skipped == 0
    assert result.failed == 0
    assert result.rolled_over == 2
    current = service.get_subscription(db_session, _ctx(), subscription.id)
    assert current.plan_id == big.id
    assert current.pending_plan_id is None
    assert current.pending_change_effective_at is None
    assert as_utc(current.current_period_end) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    charges = _billing_records(db_session, subscription.id, "charge")
    assert [item.amount for item in charges] == [Decimal("20.00"), Decimal("20.00")]

    log = [item for item in service.list_logs(db_session, _ctx(), subscription.id) if item.action == "rollover"][-1]
    assert log.details is not None
    assert log.details["pending_change_dropped"] == "duplicate_subscription"


def test_rollover_keeps_current_plan_when_scheduled_plan_was_retired(db_session: Session, service: SubscriptionService) -> None:
    big = _plan(db_session, "Big", "20.00", 100)
    small = _plan(db_session, "Small", "10.00", 40)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=big.id))
    service.downgrade(db_session, _ctx(), subscription.id, DowngradeRequest(target_plan_id=small.id))
    db_session.execute(update(Plan).where(Plan.id == small.id).values(is_active=False))
    db_session.commit()

    result = service.process_due(db_session, now=datetime(2024, 4, 1, 13, 0, tzinfo=timezone.utc))

    assert result.rolled_over == 1
    current = service.get_subscription(db_session, _ctx(), subscription.id)
    assert current.plan_id == big.id
    assert current.quota_snapshot == 100
    assert current.pending_plan_id is None
    log = [item for item in service.list_logs(db_session, _ctx(), subscription.id) if item.action == "rollover"][-1]
    assert log.details is not None
    assert log.details["pending_change_dropped"] == "plan_unavailable"


def test_cancel_during_trial_voids_the_trial_end_charge(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Trial Plan", "25.00", 500, trial_days=14)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))

    service.cancel(db_session, _ctx(), subscription.id, CancelRequest(immediate=True))

    charges = _billing_records(db_session, subscription.id, "charge")
    assert [(item.status, as_utc(item.billing_date)) for item in charges] == [("cancelled", NOW + timedelta(days=14))]
    assert _billing_records(db_session, subscription.id, "refund") == []
    voided = [item for item in events.published_events if item.get("event_type") == "billing.record_cancelled"]
    assert [item["billing_record_id"] for item in voided] == [str(charges[0].id)]


def test_cancel_voids_requested_renewal_but_keeps_current_charge(db_session: Session, service: SubscriptionService, clock: Clock) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))
    service.renew(db_session, _ctx(), subscription.id)

    clock.value = NOW + timedelta(days=3)
    service.cancel(db_session, _ctx(), subscription.id, CancelRequest())

    charges = _billing_records(db_session, subscription.id, "charge")
    assert [(item.status, as_utc(item.billing_date)) for item in charges] == [
        ("pending", NOW),
        ("cancelled", datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)),
    ]
    log = service.list_logs(db_session, _ctx(), subscription.id)[-1]
    assert log.action == "cancel"
    assert log.details is not None
    assert log.details["voided_charges"] == 1


def test_expired_subscription_can_be_cancelled_without_refund(db_session: Session, service: SubscriptionService, clock: Clock) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)
    subscription = service.create_subscription(
        db_session,
        _ctx(),
        SubscriptionCreate(plan_id=plan.id, auto_renewal=False),
    )
    service.process_due(db_session, now=datetime(2024, 4, 2, tzinfo=timezone.utc))

    clock.value = datetime(2024, 4, 3, tzinfo=timezone.utc)
    cancelled = service.cancel(db_session, _ctx(), subscription.id, CancelRequest(reason="closing account", immediate=True))

    assert cancelled.status == "cancelled"
    assert as_utc(cancelled.cancelled_at) == datetime(2024, 4, 3, tzinfo=timezone.utc)
    assert _billing_records(db_session, subscription.id, "refund") == []
    assert _log_actions(db_session, subscription.id) == ["create", "expire", "cancel"]
    log = service.list_logs(db_session, _ctx(), subscription.id)[-1]
    assert log.details is not None
    assert log.details["previous_status"] == "expired"

    with pytest.raises(AlreadyCancelled):
        service.cancel(db_session, _ctx(), subscription.id, CancelRequest())


def test_usage_summary_reports_unavailable_usage(db_session: Session, service: SubscriptionService) -> None:
    plan = _plan(db_session, "Basic", "10.00", 100)
    subscription = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=plan.id))

    with pytest.raises(DependencyUnavailable) as exc_info:
        UsageService(accessor=DownUsage()).get_usage_summary(db_session, _ctx(), subscription.id)

    assert exc_info.value.details["dependency"] == "usage accessor"


def test_upgrade_across_cycles_prorates_on_monthly_equivalent(db_session: Session, service: SubscriptionService) -> None:
    basic = _plan(db_session, "Basic", "10.00", 100)
    annual = _plan(db_session, "Annual Pro", "240.00", 500, cycle="yearly")
    annual_lite = _plan(db_session, "Annual Lite", "100.00", 200, cycle="yearly")
    first = service.create_subscription(db_session, _ctx(), SubscriptionCreate(plan_id=basic.id))
    second = service.create_subscription(db_session, _ctx("user-2"), SubscriptionCreate(plan_id=basic.id))

    upgraded = service.upgrade(db_session, _ctx(), first.id, UpgradeRequest(target_plan_id=annual.id))
    service.upgrade(db_session, _ctx("user-2"), second.id, UpgradeRequest(target_plan_id=annual_lite.id))

    assert upgraded.billing_cycle == "yearly"
    # 240/yr is 20/month against 10/month, over a full month left
    assert [item.amount for item in _billing_records(db_session, first.id, "proration")] == [Decimal("10.00")]
    # 100/yr is cheaper per month than 10/month, so nothing is owed
    assert [item.amount for item in _billing_records(db_session, second.id, "proration")] == [Decimal("0.00")]
