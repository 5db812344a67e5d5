from lumen.business.catalog.models import Plan

__all__ = ["Plan"]
