from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from lumen.business.reporting.schemas import ChurnReportRead, SubscriptionSummaryRead
from lumen.business.reporting.service import reporting_service
from lumen.core.auth import get_auth_context
from lumen.core.database import get_db
from lumen.platform.security.context import AuthContext


router = APIRouter(prefix="/reports/subscriptions", tags=["reports"])


@router.get("/summary", response_model=SubscriptionSummaryRead)
def subscription_summary(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionSummaryRead:
    return reporting_service.summary(db, ctx)


@router.get("/churn", response_model=ChurnReportRead)
def churn_report(
    window_start: datetime = Query(),
    window_end: datetime = Query(),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ChurnReportRead:
    return reporting_service.churn(db, ctx, window_start=window_start, window_end=window_end)
