"""Inbound triggers and outbound queries.

Every trigger is one unit of work for one entity: take the entity lock,
mutate, recompute and persist the compliance state, commit, and only then
queue notification dispatch. A failure rolls the whole unit back and
discards the events it published.
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime
from zoneinfo import ZoneInfo

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.compliance import Entity, ObligationDocument, ObligationStatus
from app.models.workflow import WorkflowRun, WorkflowRunStatus
from app.observability import STATE_RECOMPUTATIONS
from app.schemas.compliance import EntityComplianceState
from app.schemas.preferences import AlertPreferenceUpdate
from app.services import dispatcher, scheduler, work_queue, workflow_executor
from app.services.common import coerce_uuid, ensure_utc, utcnow
from app.services.event import discard_published, dispatch_published
from app.services.locks import EntityLockTimeout, entity_lock
from app.services.obligations import entities, obligation_instances, record_transition
from app.services.preferences import alert_preferences
from app.services.state_aggregator import compute_entity_state, latest_state, persist_state

logger = logging.getLogger(__name__)


@contextmanager
def _unit_of_work(db: Session, entity_id, trigger: str):
    try:
        with entity_lock(db, entity_id) as entity:
            yield entity
            db.commit()
    except EntityLockTimeout:
        db.rollback()
        discard_published(db)
        STATE_RECOMPUTATIONS.labels("lock_timeout").inc()
        raise
    except Exception:
        db.rollback()
        discard_published(db)
        STATE_RECOMPUTATIONS.labels("error").inc()
        logger.warning("Trigger %s failed for entity %s", trigger, entity_id)
        raise
    dispatch_published(db)


def _recompute(db: Session, entity_id, now: datetime) -> EntityComplianceState:
    state = compute_entity_state(db, entity_id, now)
    persist_state(db, state)
    STATE_RECOMPUTATIONS.labels("ok").inc()
    return state


# ---------------------------------------------------------------------------
# Inbound triggers
# ---------------------------------------------------------------------------


def document_uploaded(
    db: Session,
    entity_id,
    obligation_instance_id,
    document_type: str,
    document_id: str | None = None,
    actor_id: str | None = None,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> EntityComplianceState:
    now = ensure_utc(now) if now else utcnow()
    instance = obligation_instances.get(db, obligation_instance_id)
    if instance.entity_id != coerce_uuid(entity_id):
        raise HTTPException(
            status_code=400, detail="Obligation does not belong to this entity"
        )

    with _unit_of_work(db, entity_id, "document_uploaded") as entity:
        existing = None
        if document_id:
            existing = db.scalars(
                select(ObligationDocument).where(
                    ObligationDocument.instance_id == instance.id,
                    ObligationDocument.external_document_id == document_id,
                )
            ).first()
        if existing is None:
            db.add(
                ObligationDocument(
                    instance_id=instance.id,
                    entity_id=entity.id,
                    document_type=document_type,
                    external_document_id=document_id,
                    metadata_=metadata or {},
                    received_at=now,
                )
            )
            db.flush()
            logger.info(
                "Document %s (%s) received for obligation %s",
                document_id,
                document_type,
                instance.id,
            )
        else:
            logger.info("Document %s already recorded; replay ignored", document_id)

        run = (
            db.get(WorkflowRun, instance.workflow_run_id)
            if instance.workflow_run_id
            else None
        )
        if run is not None and run.status == WorkflowRunStatus.active:
            workflow_executor.refresh_client_steps(db, run, now)
        elif instance.status in (ObligationStatus.pending, ObligationStatus.overdue):
            if workflow_executor.resolve_template(db, instance) is not None:
                workflow_executor.start_run(db, instance.id, actor_id=actor_id, now=now)
            else:
                logger.info(
                    "No workflow template for %s; obligation %s left %s",
                    instance.obligation_code,
                    instance.id,
                    instance.status.value,
                )
        state = _recompute(db, entity.id, now)
    return state


def start_workflow(
    db: Session,
    obligation_instance_id,
    template_key: str | None = None,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> WorkflowRun:
    now = ensure_utc(now) if now else utcnow()
    instance = obligation_instances.get(db, obligation_instance_id)
    with _unit_of_work(db, instance.entity_id, "start_workflow"):
        run = workflow_executor.start_run(
            db, instance.id, template_key=template_key, actor_id=actor_id, now=now
        )
        _recompute(db, instance.entity_id, now)
    return run


def step_completed(
    db: Session,
    run_id,
    step_key: str,
    actor_id: str,
    decision: str | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> dict:
    now = ensure_utc(now) if now else utcnow()
    run = workflow_executor.get_run(db, run_id)
    with _unit_of_work(db, run.entity_id, "step_completed"):
        frontier = workflow_executor.advance(
            db, run.id, step_key, actor_id, decision=decision, note=note, now=now
        )
        _recompute(db, run.entity_id, now)
    return {"run_id": run.id, "run_status": run.status, "frontier": frontier}


def start_step(
    db: Session, run_id, step_key: str, actor_id: str, now: datetime | None = None
):
    now = ensure_utc(now) if now else utcnow()
    run = workflow_executor.get_run(db, run_id)
    with _unit_of_work(db, run.entity_id, "start_step"):
        step = workflow_executor.start_step(db, run.id, step_key, actor_id, now=now)
        _recompute(db, run.entity_id, now)
    return step


def transition_instance(
    db: Session,
    obligation_instance_id,
    status: ObligationStatus,
    actor_id: str | None = None,
    reason: str | None = None,
    now: datetime | None = None,
):
    now = ensure_utc(now) if now else utcnow()
    instance = obligation_instances.get(db, obligation_instance_id)
    with _unit_of_work(db, instance.entity_id, "transition_instance"):
        record_transition(db, instance, status, actor_id=actor_id, reason=reason)
        _recompute(db, instance.entity_id, now)
    return instance


def manual_recalculate(
    db: Session, entity_id, now: datetime | None = None
) -> EntityComplianceState:
    now = ensure_utc(now) if now else utcnow()
    with _unit_of_work(db, entity_id, "manual_recalculate") as entity:
        state = _recompute(db, entity.id, now)
    return state


def preferences_updated(
    db: Session,
    entity_id,
    preferences: dict,
    contact_id: str | None = None,
    updated_by: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Store a new preference snapshot; new reminder offsets apply from now on."""
    now = ensure_utc(now) if now else utcnow()
    payload = AlertPreferenceUpdate.model_validate(
        {"contact_id": contact_id, "updated_by": updated_by, "preferences": preferences}
    )
    with _unit_of_work(db, entity_id, "preferences_updated") as entity:
        alert_preferences.update(db, entity.id, payload)
        scheduler.emit_due_reminders(db, entity.id, now)
        _recompute(db, entity.id, now)
    return alert_preferences.get(db, entity_id, contact_id)


def tick_entity(db: Session, entity_id, now: datetime | None = None) -> EntityComplianceState:
    """Per-entity part of the scheduled tick."""
    now = ensure_utc(now) if now else utcnow()
    with _unit_of_work(db, entity_id, "tick_entity") as entity:
        scheduler.mark_overdue(db, entity.id, now)
        scheduler.emit_due_reminders(db, entity.id, now)
        scheduler.sweep_stalled_steps(db, entity.id, now)
        state = _recompute(db, entity.id, now)
    return state


def sweep_entity(db: Session, entity_id, now: datetime | None = None) -> EntityComplianceState:
    """Report newly stalled steps and refresh the state between daily ticks."""
    now = ensure_utc(now) if now else utcnow()
    with _unit_of_work(db, entity_id, "sweep_entity") as entity:
        scheduler.sweep_stalled_steps(db, entity.id, now)
        state = _recompute(db, entity.id, now)
    return state


def _tick_date(as_of: datetime) -> date:
    return ensure_utc(as_of).astimezone(ZoneInfo(settings.default_timezone)).date()


def scheduled_tick(db: Session, as_of: datetime | None = None) -> dict:
    """Roll obligations forward, then run the per-entity sweeps.

    Roll-forward only inserts, so it commits without the entity locks. An
    entity whose lock is busy is requeued rather than skipped.
    """
    as_of = ensure_utc(as_of) if as_of else utcnow()
    try:
        created = scheduler.roll_forward(db, _tick_date(as_of))
        db.commit()
    except Exception:
        db.rollback()
        raise

    entity_ids = list(
        db.scalars(
            select(Entity.id).where(Entity.is_archived.is_(False)).order_by(Entity.id)
        )
    )
    processed = 0
    requeued = 0
    for entity_id in entity_ids:
        try:
            tick_entity(db, entity_id, as_of)
            processed += 1
        except EntityLockTimeout:
            requeue("tick_entity", entity_id=str(entity_id), now=as_of.isoformat())
            requeued += 1
    logger.info(
        "Scheduled tick %s: %d created, %d processed, %d requeued",
        as_of.isoformat(),
        len(created),
        processed,
        requeued,
    )
    return {
        "as_of": as_of,
        "instances_created": len(created),
        "entities_processed": processed,
        "entities_requeued": requeued,
    }


def acknowledge_alert(db: Session, event_id, actor_id: str | None = None):
    ack = dispatcher.acknowledge(db, event_id, actor_id)
    db.commit()
    return dispatcher.get_event(db, ack.event_id)


def assign_next(db: Session, queue_name: str):
    item = work_queue.assign(db, queue_name)
    db.commit()
    return item


def auto_assign(db: Session, queue_name: str):
    items = work_queue.auto_assign(db, queue_name)
    db.commit()
    return items


TRIGGERS = {
    "document_uploaded": document_uploaded,
    "step_completed": step_completed,
    "start_step": start_step,
    "manual_recalculate": manual_recalculate,
    "preferences_updated": preferences_updated,
    "tick_entity": tick_entity,
    "sweep_entity": sweep_entity,
}


def run_trigger(db: Session, trigger: str, **kwargs):
    handler = TRIGGERS.get(trigger)
    if handler is None:
        raise ValueError(f"Unknown trigger: {trigger}")
    if isinstance(kwargs.get("now"), str):
        kwargs["now"] = datetime.fromisoformat(kwargs["now"])
    return handler(db, **kwargs)


def requeue(trigger: str, **kwargs) -> None:
    """Hand a trigger that lost the entity lock back to the worker queue."""
    from app.tasks.events import process_trigger

    process_trigger.apply_async(
        kwargs={"trigger": trigger, "payload": kwargs},
        countdown=settings.lock_requeue_delay_seconds,
    )
    logger.warning(
        "Requeued %s in %ss", trigger, settings.lock_requeue_delay_seconds, extra=kwargs
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_entity_state(
    db: Session, entity_id, now: datetime | None = None
) -> EntityComplianceState:
    """Last persisted state; computed on the fly only if none was ever stored."""
    entity = entities.get(db, entity_id)
    state = latest_state(db, entity.id)
    if state is not None:
        return state
    return compute_entity_state(db, entity.id, ensure_utc(now) if now else utcnow())


def get_alerts(db: Session, entity_id, limit: int = 50) -> list[dict]:
    entity = entities.get(db, entity_id)
    return [dispatcher.alert_view(e) for e in dispatcher.list_alerts(db, entity.id, limit)]


def get_workflow_run(db: Session, run_id) -> dict:
    return workflow_executor.run_view(workflow_executor.get_run(db, run_id))
