from lumen.business.billing.models import BillingRecord

__all__ = ["BillingRecord"]
