from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from lumen.business.catalog.schemas import PlanCreate, PlanRead, PlanUpdate
from lumen.business.catalog.service import catalog_service
from lumen.core.auth import get_auth_context
from lumen.core.database import get_db
from lumen.platform.security.context import AuthContext


router = APIRouter(prefix="/plans", tags=["plans"])


@router.get("", response_model=list[PlanRead])
def list_plans(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> list[PlanRead]:
    return catalog_service.list_plans(db, active_only=not include_inactive)


@router.post("", response_model=PlanRead, status_code=status.HTTP_201_CREATED)
def create_plan(
    payload: PlanCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PlanRead:
    return catalog_service.create_plan(db, ctx, payload)


@router.get("/{plan_id}", response_model=PlanRead)
def get_plan(plan_id: uuid.UUID, db: Session = Depends(get_db)) -> PlanRead:
    return catalog_service.get_plan(db, plan_id)


@router.patch("/{plan_id}", response_model=PlanRead)
def update_plan(
    plan_id: uuid.UUID,
    payload: PlanUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PlanRead:
    return catalog_service.update_plan(db, ctx, plan_id, payload)


@router.post("/{plan_id}/deactivate", response_model=PlanRead)
def deactivate_plan(
    plan_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PlanRead:
    return catalog_service.deactivate_plan(db, ctx, plan_id)


@router.delete("/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_plan(
    plan_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Response:
    catalog_service.delete_plan(db, ctx, plan_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{plan_id}/upgrades", response_model=list[PlanRead])
def list_upgrade_options(plan_id: uuid.UUID, db: Session = Depends(get_db)) -> list[PlanRead]:
    return catalog_service.upgrade_options(db, plan_id)


@router.get("/{plan_id}/downgrades", response_model=list[PlanRead])
def list_downgrade_options(plan_id: uuid.UUID, db: Session = Depends(get_db)) -> list[PlanRead]:
    return catalog_service.downgrade_options(db, plan_id)
