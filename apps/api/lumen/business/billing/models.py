from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from lumen.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


BILLING_KINDS = ("charge", "proration", "refund")
BILLING_STATUSES = ("pending", "completed", "failed", "cancelled")


class BillingRecord(Base):
    __tablename__ = "billing_record"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("subscription.id", ondelete="RESTRICT"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="charge", server_default="charge")
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    billing_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_billing_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending")
    note: Mapped[str | None] = mapped_column(Text(), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_billing_record_invoice_number"),
        UniqueConstraint("subscription_id", "kind", "billing_date", name="uq_billing_record_period"),
        CheckConstraint("amount >= 0", name="ck_billing_record_amount_nonnegative"),
        CheckConstraint("kind IN ('charge', 'proration', 'refund')", name="ck_billing_record_kind"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled')",
            name="ck_billing_record_status",
        ),
        Index("ix_billing_record_user_date", "user_id", "billing_date"),
    )
