from __future__ import annotations

from lumen.platform.security.repository import BaseRepository


class BillingRecordRepository(BaseRepository):
    resource = "billing.record"
