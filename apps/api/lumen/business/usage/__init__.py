from lumen.business.usage.models import UsageRecord

__all__ = ["UsageRecord"]
