from __future__ import annotations

from typing import Any


class LifecycleError(Exception):
    """Base class for typed failures surfaced by the subscription domain.

    Each subclass carries a stable machine ``code`` and the HTTP ``status_code``
    the API layer renders it with. ``details`` is rendered verbatim into the
    error envelope.
    """

    code = "lifecycle_error"
    status_code = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFound(LifecycleError):
    code = "not_found"
    status_code = 404


class SubscriptionNotFound(NotFound):
    def __init__(self, subscription_id: object) -> None:
        super().__init__("subscription not found", details={"subscription_id": str(subscription_id)})


class PlanNotFound(NotFound):
    def __init__(self, plan_id: object) -> None:
        super().__init__("plan not found", details={"plan_id": str(plan_id)})


class BillingRecordNotFound(NotFound):
    def __init__(self, record_id: object) -> None:
        super().__init__("billing record not found", details={"billing_record_id": str(record_id)})


class InvalidTransition(LifecycleError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, action: str, message: str | None = None) -> None:
        self.current = current
        self.action = action
        super().__init__(
            message or f"cannot {action} a subscription in status {current}",
            details={"status": current, "action": action},
        )


class SubscriptionConflict(InvalidTransition):
    """The subscription changed underneath the operation (lost conditional update)."""

    code = "subscription_conflict"

    def __init__(self, subscription_id: object, expected_status: str, action: str) -> None:
        self.subscription_id = subscription_id
        super().__init__(
            expected_status,
            action,
            message=f"subscription {subscription_id} is no longer {expected_status}",
        )


class AlreadyCancelled(InvalidTransition):
    code = "already_cancelled"

    def __init__(self) -> None:
        super().__init__("cancelled", "cancel", message="Subscription is already cancelled")


class NotAnUpgrade(LifecycleError):
    code = "not_an_upgrade"
    status_code = 422


class NotADowngrade(LifecycleError):
    code = "not_a_downgrade"
    status_code = 422


class UsageExceedsTarget(LifecycleError):
    code = "usage_exceeds_target"
    status_code = 422

    def __init__(self, usage: int, target_quota: int) -> None:
        self.usage = usage
        self.target_quota = target_quota
        super().__init__(
            f"current usage {usage} exceeds target plan quota {target_quota}",
            details={"usage": usage, "target_quota": target_quota},
        )


class DuplicateSubscription(LifecycleError):
    code = "duplicate_subscription"
    status_code = 409

    def __init__(self, user_id: str | None, plan_id: object, *, scheduled_by: object | None = None) -> None:
        if scheduled_by is None:
            super().__init__(
                "Active subscription already exists",
                details={"user_id": user_id, "plan_id": str(plan_id)},
            )
            return
        super().__init__(
            "A scheduled downgrade already moves a subscription onto this plan",
            details={"user_id": user_id, "plan_id": str(plan_id), "scheduled_by": str(scheduled_by)},
        )


class PlanUnavailable(LifecycleError):
    code = "plan_unavailable"
    status_code = 409

    def __init__(self, plan_id: object) -> None:
        super().__init__("Plan is not active", details={"plan_id": str(plan_id)})


class PlanInUse(LifecycleError):
    code = "plan_in_use"
    status_code = 409


class DependencyUnavailable(LifecycleError):
    code = "dependency_unavailable"
    status_code = 503

    def __init__(self, dependency: str, reason: str | None = None) -> None:
        self.dependency = dependency
        super().__init__(
            f"{dependency} is unavailable",
            details={"dependency": dependency, "reason": reason},
        )


class InvalidBillingTransition(LifecycleError):
    code = "invalid_transition"
    status_code = 409


class DuplicatePlan(LifecycleError):
    code = "duplicate_plan"
    status_code = 409

    def __init__(self, name: str) -> None:
        super().__init__("plan name already exists", details={"name": name})
