from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lumen.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


SUBSCRIPTION_STATUSES = ("trial", "active", "paused", "cancelled", "expired")
LIVE_STATUSES = ("trial", "active", "paused")

_LIVE_PREDICATE = "status IN ('trial', 'active', 'paused')"


class Subscription(Base):
    __tablename__ = "subscription"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    plan_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("plan.id", ondelete="RESTRICT"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    billing_cycle: Mapped[str] = mapped_column(String(16), nullable=False)
    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_billing_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pause_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pause_reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    auto_renewal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"), server_default="0")
    price_snapshot: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    # NULL quota snapshot means unlimited
    quota_snapshot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pending_plan_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("plan.id", ondelete="RESTRICT"), nullable=True)
    pending_change_effective_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    logs: Mapped[list[SubscriptionLog]] = relationship(
        "lumen.business.subscription.models.SubscriptionLog",
        back_populates="subscription",
        order_by="SubscriptionLog.created_at",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('trial', 'active', 'paused', 'cancelled', 'expired')",
            name="ck_subscription_status",
        ),
        CheckConstraint("current_period_end >= current_period_start", name="ck_subscription_period_order"),
        CheckConstraint(
            "discount_percentage >= 0 AND discount_percentage <= 100",
            name="ck_subscription_discount_range",
        ),
        CheckConstraint(
            "(status = 'cancelled') = (cancelled_at IS NOT NULL)",
            name="ck_subscription_cancelled_at",
        ),
        CheckConstraint(
            "(status = 'paused') = (paused_at IS NOT NULL)",
            name="ck_subscription_paused_at",
        ),
        Index(
            "uq_subscription_live_user_plan",
            "user_id",
            "plan_id",
            unique=True,
            postgresql_where=text(_LIVE_PREDICATE),
            sqlite_where=text(_LIVE_PREDICATE),
        ),
        Index("ix_subscription_user", "user_id", "created_at"),
        Index("ix_subscription_status_period_end", "status", "current_period_end"),
    )


class SubscriptionLog(Base):
    __tablename__ = "subscription_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("subscription.id", ondelete="CASCADE"), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    details: Mapped[dict[str, object] | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    subscription: Mapped[Subscription] = relationship("lumen.business.subscription.models.Subscription", back_populates="logs")

    __table_args__ = (
        Index("ix_subscription_log_subscription", "subscription_id", "created_at"),
    )
