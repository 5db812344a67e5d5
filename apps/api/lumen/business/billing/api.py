from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from lumen.business.billing.schemas import BillingRecordRead, BillingStatus, MarkBillingFailedRequest
from lumen.business.billing.service import billing_service
from lumen.core.auth import get_auth_context
from lumen.core.database import get_db
from lumen.platform.security.context import AuthContext


router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/records", response_model=list[BillingRecordRead])
def list_records(
    subscription_id: uuid.UUID | None = Query(default=None),
    status_filter: BillingStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[BillingRecordRead]:
    return billing_service.list_records(db, ctx, subscription_id=subscription_id, status=status_filter)


@router.get("/records/{record_id}", response_model=BillingRecordRead)
def get_record(
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> BillingRecordRead:
    return billing_service.get_record(db, ctx, record_id)


@router.post("/records/{record_id}/complete", response_model=BillingRecordRead)
def complete_record(
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> BillingRecordRead:
    return billing_service.mark_completed(db, ctx, record_id)


@router.post("/records/{record_id}/fail", response_model=BillingRecordRead)
def fail_record(
    record_id: uuid.UUID,
    payload: MarkBillingFailedRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> BillingRecordRead:
    return billing_service.mark_failed(db, ctx, record_id, payload.reason)


@router.post("/records/{record_id}/cancel", response_model=BillingRecordRead)
def cancel_record(
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> BillingRecordRead:
    return billing_service.cancel_record(db, ctx, record_id)


@router.post("/records/{record_id}/retry", response_model=BillingRecordRead)
def retry_record(
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> BillingRecordRead:
    return billing_service.retry_record(db, ctx, record_id)
