from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from sqlalchemy.orm import Session

from lumen.business.subscription.errors import (
    DependencyUnavailable,
    NotADowngrade,
    NotAnUpgrade,
    UsageExceedsTarget,
)


class UsageUnavailable(Exception):
    """Raised by a usage accessor that cannot answer right now."""


class UsageAccessor(Protocol):
    def get_current_usage(self, session: Session, subscription_id: uuid.UUID) -> int:
        ...


@dataclass(frozen=True, slots=True)
class Offering:
    """Price and quota of a plan, or the snapshot a subscription holds of one.

    ``quota`` of ``None`` means unlimited.
    """

    price: Decimal
    quota: int | None

    def rank(self) -> tuple[Decimal, int, int]:
        # unlimited ranks above every finite quota
        if self.quota is None:
            return (Decimal(self.price), 1, 0)
        return (Decimal(self.price), 0, self.quota)


def is_upgrade(current: Offering, target: Offering) -> bool:
    return target.rank() > current.rank()


def is_downgrade(current: Offering, target: Offering) -> bool:
    return target.rank() < current.rank()


def ensure_upgrade(current: Offering, target: Offering) -> None:
    if not is_upgrade(current, target):
        raise NotAnUpgrade(
            "Cannot upgrade to the same or lower plan",
            details={"current_price": str(current.price), "target_price": str(target.price)},
        )


def ensure_downgrade(current: Offering, target: Offering) -> None:
    if not is_downgrade(current, target):
        raise NotADowngrade(
            "Cannot downgrade to the same or higher plan",
            details={"current_price": str(current.price), "target_price": str(target.price)},
        )


def read_usage(session: Session, usage_accessor: UsageAccessor, subscription_id: uuid.UUID) -> int:
    try:
        return usage_accessor.get_current_usage(session, subscription_id)
    except UsageUnavailable as exc:
        raise DependencyUnavailable("usage accessor", reason=str(exc)) from exc


def check_usage_fits(
    session: Session,
    usage_accessor: UsageAccessor,
    subscription_id: uuid.UUID,
    target: Offering,
    *,
    override: bool = False,
) -> int | None:
    """Verify the subscription's current usage fits the target quota.

    Returns the usage read, or ``None`` when the accessor was not consulted
    (override requested or unlimited target). An unavailable accessor fails
    closed.
    """
    if override or target.quota is None:
        return None

    usage = read_usage(session, usage_accessor, subscription_id)
    if usage > target.quota:
        raise UsageExceedsTarget(usage, target.quota)
    return usage
