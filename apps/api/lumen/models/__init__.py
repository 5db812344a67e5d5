from lumen.business.billing.models import BillingRecord
from lumen.business.catalog.models import Plan
from lumen.business.subscription.models import Subscription, SubscriptionLog
from lumen.business.usage.models import UsageRecord

__all__ = [
    "BillingRecord",
    "Plan",
    "Subscription",
    "SubscriptionLog",
    "UsageRecord",
]
