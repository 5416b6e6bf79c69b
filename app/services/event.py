import enum
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.compliance import Domain
from app.models.notification import NotificationEvent, Severity

logger = logging.getLogger(__name__)

_PUBLISHED_KEY = "published_event_ids"


class EventType(enum.Enum):
    reminder_due = "compliance.reminder_due"
    obligation_overdue = "compliance.overdue"
    obligation_completed = "compliance.completed"
    state_changed = "compliance.state_changed"

    workflow_started = "workflow.started"
    workflow_completed = "workflow.completed"
    step_stalled = "workflow.step_stalled"
    step_rejected = "workflow.step_rejected"
    step_action = "workflow.step_action"

    escalation = "notification.escalation"
    digest = "notification.digest"


def publish_event(
    db: Session,
    event_type: EventType,
    entity_id: str | uuid.UUID,
    severity: Severity,
    title: str,
    body: str,
    domain: Domain | None = None,
    obligation_instance_id: uuid.UUID | None = None,
    workflow_run_id: uuid.UUID | None = None,
    payload: dict | None = None,
    dedup_key: str | None = None,
    is_escalation: bool = False,
    parent_event_id: uuid.UUID | None = None,
) -> NotificationEvent | None:
    """Record an immutable notification event in the caller's transaction.

    Returns ``None`` when an event with the same ``dedup_key`` already exists.
    The event id is remembered on the session so the caller can queue dispatch
    once the transaction commits (see :func:`dispatch_published`).
    """
    if dedup_key:
        existing = db.scalars(
            select(NotificationEvent.id).where(NotificationEvent.dedup_key == dedup_key)
        ).first()
        if existing:
            logger.debug("Skipped duplicate event %s", dedup_key)
            return None

    event = NotificationEvent(
        entity_id=entity_id,
        event_type=event_type.value,
        severity=severity,
        domain=domain,
        obligation_instance_id=obligation_instance_id,
        workflow_run_id=workflow_run_id,
        title=title,
        body=body,
        payload=payload or {},
        dedup_key=dedup_key,
        is_escalation=is_escalation,
        parent_event_id=parent_event_id,
    )
    try:
        with db.begin_nested():
            db.add(event)
    except IntegrityError:
        logger.info("Lost race publishing event %s", dedup_key)
        return None

    db.info.setdefault(_PUBLISHED_KEY, []).append(event.id)
    logger.info(
        "Published %s (%s) for entity %s",
        event_type.value,
        severity.value,
        entity_id,
        extra={"event_id": str(event.id), "dedup_key": dedup_key},
    )
    return event


def discard_published(db: Session) -> None:
    db.info.pop(_PUBLISHED_KEY, None)


def dispatch_published(db: Session) -> list[uuid.UUID]:
    """Queue dispatch for events published since the last call.

    Call only after the transaction that created the events has committed.
    Fire-and-forget: a failure to enqueue is logged, and the periodic
    reconciliation task picks the event up later.
    """
    event_ids = db.info.pop(_PUBLISHED_KEY, [])
    for event_id in event_ids:
        enqueue_dispatch(event_id)
    return event_ids


def enqueue_dispatch(event_id: str | uuid.UUID) -> None:
    try:
        from app.tasks.notifications import dispatch_notification_event

        dispatch_notification_event.delay(str(event_id))
    except Exception as e:
        logger.exception("Failed to enqueue dispatch for event %s: %s", event_id, e)
