import logging

from app.celery_app import celery_app
from app.config import settings

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.scheduler.scheduled_tick", ignore_result=True)
def scheduled_tick(as_of: str | None = None) -> None:
    """Daily roll-forward plus the per-entity reminder and overdue sweeps."""
    from app.db import SessionLocal

    db = SessionLocal()
    try:
        _scheduled_tick(db, as_of)
    except Exception as e:
        logger.exception("Scheduled tick failed: %s", e)
    finally:
        db.close()


def _scheduled_tick(db, as_of: str | None = None) -> dict:
    from datetime import datetime

    from app.services import orchestrator

    when = datetime.fromisoformat(as_of) if as_of else None
    return orchestrator.scheduled_tick(db, when)


@celery_app.task(
    name="app.tasks.scheduler.tick_entity",
    ignore_result=True,
    bind=True,
    max_retries=None,
)
def tick_entity(self, entity_id: str, now: str | None = None) -> None:
    from app.db import SessionLocal
    from app.services.locks import EntityLockTimeout

    db = SessionLocal()
    try:
        _tick_entity(db, entity_id, now)
    except EntityLockTimeout:
        logger.warning("Entity %s busy; tick requeued", entity_id)
        self.retry(countdown=settings.lock_requeue_delay_seconds)
    except Exception as e:
        logger.exception("Tick failed for entity %s: %s", entity_id, e)
    finally:
        db.close()


def _tick_entity(db, entity_id: str, now: str | None = None):
    from datetime import datetime

    from app.services import orchestrator

    when = datetime.fromisoformat(now) if now else None
    return orchestrator.tick_entity(db, entity_id, when)


@celery_app.task(name="app.tasks.scheduler.sweep_stalled_steps", ignore_result=True)
def sweep_stalled_steps() -> None:
    """Recompute every entity with an active run so SLA breaches surface promptly."""
    from app.db import SessionLocal

    db = SessionLocal()
    try:
        _sweep_stalled_steps(db)
    except Exception as e:
        logger.exception("SLA breach sweep failed: %s", e)
    finally:
        db.close()


def _sweep_stalled_steps(db) -> int:
    from sqlalchemy import select

    from app.models.workflow import WorkflowRun, WorkflowRunStatus
    from app.services import orchestrator
    from app.services.common import utcnow
    from app.services.locks import EntityLockTimeout

    now = utcnow()
    entity_ids = list(
        db.scalars(
            select(WorkflowRun.entity_id)
            .where(WorkflowRun.status == WorkflowRunStatus.active)
            .distinct()
        )
    )
    for entity_id in entity_ids:
        try:
            orchestrator.sweep_entity(db, entity_id, now)
        except EntityLockTimeout:
            tick_entity.apply_async(
                kwargs={"entity_id": str(entity_id), "now": now.isoformat()},
                countdown=settings.lock_requeue_delay_seconds,
            )
    return len(entity_ids)


@celery_app.task(name="app.tasks.scheduler.recompute_entity", ignore_result=True)
def recompute_entity(entity_id: str) -> None:
    from app.db import SessionLocal
    from app.services import orchestrator
    from app.services.locks import EntityLockTimeout

    db = SessionLocal()
    try:
        orchestrator.manual_recalculate(db, entity_id)
    except EntityLockTimeout:
        recompute_entity.apply_async(
            args=[entity_id], countdown=settings.lock_requeue_delay_seconds
        )
    except Exception as e:
        logger.exception("Recompute failed for entity %s: %s", entity_id, e)
    finally:
        db.close()
