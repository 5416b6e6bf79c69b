import logging

from app.celery_app import celery_app
from app.config import settings

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.tasks.events.process_trigger",
    ignore_result=True,
    bind=True,
    max_retries=None,
)
def process_trigger(self, trigger: str, payload: dict | None = None) -> None:
    """Run an inbound trigger off the request path.

    A trigger that cannot get its entity lock is retried after
    ``LOCK_REQUEUE_DELAY_SECONDS`` instead of being dropped.
    """
    from app.db import SessionLocal
    from app.services.locks import EntityLockTimeout

    db = SessionLocal()
    try:
        _process(db, trigger, payload or {})
    except EntityLockTimeout as e:
        logger.warning("Trigger %s busy on entity %s; retrying", trigger, e.entity_id)
        self.retry(countdown=settings.lock_requeue_delay_seconds)
    except Exception as e:
        logger.exception("Trigger %s failed: %s", trigger, e)
    finally:
        db.close()


def _process(db, trigger: str, payload: dict):
    from app.services import orchestrator

    logger.info("Processing trigger %s", trigger)
    return orchestrator.run_trigger(db, trigger, **payload)
