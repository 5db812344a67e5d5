from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lumen import events
from lumen.business.billing.models import BillingRecord
from lumen.business.billing.repository import BillingRecordRepository
from lumen.business.billing.schemas import BillingRecordRead
from lumen.business.subscription.cycle import q_money
from lumen.business.subscription.errors import BillingRecordNotFound, InvalidBillingTransition
from lumen.business.subscription.repository import BillingRequest
from lumen.metrics import observe_billing_record_created
from lumen.platform.security.context import AuthContext

logger = logging.getLogger("lumen.billing")


VALID_BILLING_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"completed", "failed", "cancelled"},
    "failed": {"pending", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}


@dataclass(slots=True)
class BillingService:
    """Billing record generator used by the subscription lifecycle.

    Records are keyed by (subscription, kind, billing date); asking for the
    same record twice returns the one already stored, so lifecycle retries
    never bill a period twice. Money movement is out of scope: records stay
    ``pending`` until a payment integration marks them.
    """

    record_repository: BillingRecordRepository = field(default_factory=BillingRecordRepository)

    def request_billing_record(self, session: Session, request: BillingRequest) -> BillingRecordRead:
        existing = self._find_existing(session, request)
        if existing is not None:
            logger.info(
                "billing.record_deduplicated",
                extra={"subscription_id": str(request.subscription_id), "billing_record_id": str(existing.id)},
            )
            return BillingRecordRead.model_validate(existing)

        record = BillingRecord(
            subscription_id=request.subscription_id,
            user_id=request.user_id,
            invoice_number=self._next_invoice_number(session, request.billing_date),
            kind=request.kind,
            amount=q_money(request.amount),
            billing_date=request.billing_date,
            next_billing_date=request.next_billing_date,
            status="pending",
            note=request.note,
        )
        session.add(record)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            existing = self._find_existing(session, request)
            if existing is None:
                raise
            return BillingRecordRead.model_validate(existing)
        session.refresh(record)

        observe_billing_record_created(record.kind)
        logger.info(
            "billing.record_created",
            extra={
                "subscription_id": str(record.subscription_id),
                "billing_record_id": str(record.id),
                "action": record.kind,
            },
        )
        events.publish(
            {
                "event_type": "billing.record_created",
                "billing_record_id": str(record.id),
                "subscription_id": str(record.subscription_id),
                "kind": record.kind,
                "amount": str(record.amount),
            }
        )
        return BillingRecordRead.model_validate(record)

    def void_pending_charges(self, session: Session, subscription_id: uuid.UUID, after: datetime) -> int:
        """Cancel pending charges billed after ``after``; returns how many were voided."""
        records = session.scalars(
            select(BillingRecord).where(
                and_(
                    BillingRecord.subscription_id == subscription_id,
                    BillingRecord.kind == "charge",
                    BillingRecord.status == "pending",
                    BillingRecord.billing_date > after,
                )
            )
        ).all()
        if not records:
            return 0

        for record in records:
            record.status = "cancelled"
            session.add(record)
        session.commit()

        for record in records:
            logger.info(
                "billing.record_transitioned",
                extra={"billing_record_id": str(record.id), "status": "cancelled", "action": "pending"},
            )
            events.publish(
                {
                    "event_type": "billing.record_cancelled",
                    "billing_record_id": str(record.id),
                    "subscription_id": str(record.subscription_id),
                }
            )
        return len(records)

    def list_records(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        subscription_id: uuid.UUID | None = None,
        status: str | None = None,
    ) -> list[BillingRecordRead]:
        stmt: Select[tuple[BillingRecord]] = select(BillingRecord)
        if subscription_id is not None:
            stmt = stmt.where(BillingRecord.subscription_id == subscription_id)
        if status is not None:
            stmt = stmt.where(BillingRecord.status == status)
        stmt = self.record_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(BillingRecord.billing_date.desc(), BillingRecord.created_at.desc())).all()
        return [BillingRecordRead.model_validate(row) for row in rows]

    def get_record(self, session: Session, ctx: AuthContext, record_id: uuid.UUID) -> BillingRecordRead:
        return BillingRecordRead.model_validate(self._get_record(session, ctx, record_id))

    def mark_completed(self, session: Session, ctx: AuthContext, record_id: uuid.UUID) -> BillingRecordRead:
        return self._transition(session, ctx, record_id, "completed")

    def mark_failed(self, session: Session, ctx: AuthContext, record_id: uuid.UUID, reason: str) -> BillingRecordRead:
        return self._transition(session, ctx, record_id, "failed", failure_reason=reason)

    def cancel_record(self, session: Session, ctx: AuthContext, record_id: uuid.UUID) -> BillingRecordRead:
        return self._transition(session, ctx, record_id, "cancelled")

    def retry_record(self, session: Session, ctx: AuthContext, record_id: uuid.UUID) -> BillingRecordRead:
        return self._transition(session, ctx, record_id, "pending", failure_reason=None)

    def _transition(
        self,
        session: Session,
        ctx: AuthContext,
        record_id: uuid.UUID,
        target: str,
        **changes: str | None,
    ) -> BillingRecordRead:
        self.record_repository.validate_admin_write(ctx, action=f"mark_{target}")
        record = self._get_record(session, ctx, record_id)
        if target not in VALID_BILLING_TRANSITIONS.get(record.status, set()):
            raise InvalidBillingTransition(
                f"invalid billing record transition {record.status} -> {target}",
                details={"status": record.status, "target": target},
            )

        previous = record.status
        record.status = target
        for key, value in changes.items():
            setattr(record, key, value)
        session.add(record)
        session.commit()
        session.refresh(record)

        logger.info(
            "billing.record_transitioned",
            extra={"billing_record_id": str(record.id), "status": target, "action": previous},
        )
        events.publish(
            {
                "event_type": f"billing.record_{target}",
                "billing_record_id": str(record.id),
                "subscription_id": str(record.subscription_id),
                "correlation_id": ctx.correlation_id,
            }
        )
        return BillingRecordRead.model_validate(record)

    def _get_record(self, session: Session, ctx: AuthContext, record_id: uuid.UUID) -> BillingRecord:
        record = session.get(BillingRecord, record_id)
        if record is None:
            raise BillingRecordNotFound(record_id)
        self.record_repository.validate_read_scope(ctx, owner_id=record.user_id)
        return record

    @staticmethod
    def _find_existing(session: Session, request: BillingRequest) -> BillingRecord | None:
        return session.scalar(
            select(BillingRecord).where(
                and_(
                    BillingRecord.subscription_id == request.subscription_id,
                    BillingRecord.kind == request.kind,
                    BillingRecord.billing_date == request.billing_date,
                )
            )
        )

    @staticmethod
    def _next_invoice_number(session: Session, billing_date: datetime) -> str:
        prefix = f"INV-{billing_date.strftime('%Y%m%d')}-"
        counter = session.scalar(
            select(func.count()).select_from(BillingRecord).where(BillingRecord.invoice_number.like(f"{prefix}%"))
        ) or 0
        return f"{prefix}{counter + 1:05d}"


billing_service = BillingService()
