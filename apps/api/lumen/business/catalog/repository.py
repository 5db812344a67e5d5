from __future__ import annotations

from lumen.platform.security.repository import BaseRepository


class PlanRepository(BaseRepository):
    resource = "catalog.plan"
