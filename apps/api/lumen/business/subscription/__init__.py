from lumen.business.subscription.models import Subscription, SubscriptionLog

__all__ = [
    "Subscription",
    "SubscriptionLog",
]
