import logging

from celery import Celery

from lumen.business.subscription.service import subscription_service
from lumen.core.config import get_settings
from lumen.core.database import SessionLocal
from lumen.platform.security.context import AuthContext

logger = logging.getLogger("lumen.tasks")
settings = get_settings()

celery_app = Celery("lumen_api", broker=settings.redis_url, backend=settings.redis_url)

if settings.lifecycle_sweep_enabled:
    celery_app.conf.beat_schedule = {
        "process-due-subscriptions": {
            "task": "lumen.tasks.process_due_subscriptions",
            "schedule": float(settings.lifecycle_sweep_interval_seconds),
        }
    }


@celery_app.task(name="lumen.tasks.process_due_subscriptions")
def process_due_subscriptions() -> dict[str, int]:
    """Run one lifecycle sweep: trial conversions, renewals, expiries and auto-resumes."""
    session = SessionLocal()
    try:
        result = subscription_service.process_due(
            session,
            AuthContext.system(),
            limit=settings.lifecycle_sweep_batch_size,
        )
    finally:
        session.close()

    if result.failed:
        logger.warning("tasks.process_due_partial", extra={"failed": result.failed})
    return result.model_dump()
