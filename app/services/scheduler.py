"""Deadline scheduler.

``roll_forward`` only ever inserts instances, guarded by the unique key on
(entity, obligation code, period), so it can run alongside per-entity work
without taking the entity lock. The per-entity sweeps below mutate existing
rows and run under the lock.
"""

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.compliance import (
    Entity,
    ObligationDefinition,
    ObligationInstance,
    ObligationStatus,
    ObligationStatusTransition,
    Periodicity,
    ReminderLog,
)
from app.models.notification import NotificationEvent, Severity
from app.models.workflow import WorkflowRun, WorkflowRunStatus
from app.observability import OBLIGATIONS_CREATED
from app.services import periods
from app.services.common import coerce_uuid, ensure_utc
from app.services.event import EventType, publish_event
from app.services.obligations import (
    active_definitions,
    definition_applies,
    open_instances,
    record_transition,
)
from app.services.penalties import penalty_for
from app.services.preferences import snapshot_for
from app.services.state_aggregator import local_today
from app.services.workflow_steps import stalled_steps

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Roll-forward
# ---------------------------------------------------------------------------


def _last_instance(
    db: Session, entity_id, obligation_code: str
) -> ObligationInstance | None:
    return db.scalars(
        select(ObligationInstance)
        .where(
            ObligationInstance.entity_id == entity_id,
            ObligationInstance.obligation_code == obligation_code,
        )
        .order_by(ObligationInstance.period_start.desc())
        .limit(1)
    ).first()


def _exists(db: Session, entity_id, obligation_code: str, period_key: str) -> bool:
    return (
        db.scalars(
            select(ObligationInstance.id).where(
                ObligationInstance.entity_id == entity_id,
                ObligationInstance.obligation_code == obligation_code,
                ObligationInstance.period_key == period_key,
            )
        ).first()
        is not None
    )


def _in_effect(definition: ObligationDefinition, period: periods.Period) -> bool:
    if definition.effective_from and period.end < definition.effective_from:
        return False
    if definition.effective_until and period.start > definition.effective_until:
        return False
    return True


def _create_instance(
    db: Session,
    definition: ObligationDefinition,
    entity: Entity,
    period: periods.Period,
) -> ObligationInstance | None:
    if _exists(db, entity.id, definition.code, period.key):
        return None
    instance = ObligationInstance(
        entity_id=entity.id,
        definition_id=definition.id,
        obligation_code=definition.code,
        period_key=period.key,
        period_label=period.label,
        period_start=period.start,
        period_end=period.end,
        due_date=periods.due_date_for(period, definition.due_offset_days),
        status=ObligationStatus.pending,
    )
    try:
        with db.begin_nested():
            db.add(instance)
            db.flush()
            db.add(
                ObligationStatusTransition(
                    instance_id=instance.id,
                    from_status=None,
                    to_status=ObligationStatus.pending,
                    actor_id="scheduler",
                    reason="period opened",
                )
            )
    except IntegrityError:
        logger.info(
            "Instance %s/%s for entity %s created concurrently",
            definition.code,
            period.key,
            entity.id,
        )
        return None
    OBLIGATIONS_CREATED.inc()
    logger.info(
        "Created %s %s due %s for entity %s",
        definition.code,
        period.label,
        instance.due_date.isoformat(),
        entity.id,
    )
    return instance


def _first_period(
    definition: ObligationDefinition, as_of: date
) -> periods.Period:
    """Earliest period whose due date has not yet passed on ``as_of``."""
    period = periods.period_containing(definition.periodicity, as_of)
    for _ in range(settings.max_periods_per_run):
        previous = periods.previous_period(definition.periodicity, period)
        if previous is None:
            break
        if periods.due_date_for(previous, definition.due_offset_days) < as_of:
            break
        period = previous
    return period


def _roll_definition(
    db: Session, definition: ObligationDefinition, entity: Entity, as_of: date
) -> list[ObligationInstance]:
    horizon = as_of + timedelta(days=settings.scheduler_lookahead_days)
    created: list[ObligationInstance] = []

    if definition.periodicity == Periodicity.one_time:
        if _last_instance(db, entity.id, definition.code) is not None:
            return created
        anchor = definition.effective_from or entity.onboarded_on or as_of
        period = periods.period_containing(Periodicity.one_time, anchor)
        if periods.due_date_for(period, definition.due_offset_days) <= horizon:
            instance = _create_instance(db, definition, entity, period)
            if instance is not None:
                created.append(instance)
        return created

    last = _last_instance(db, entity.id, definition.code)
    if last is not None:
        current = periods.period_containing(definition.periodicity, last.period_start)
        period = periods.next_period(definition.periodicity, current)
    else:
        period = _first_period(definition, as_of)

    steps = 0
    while (
        period is not None
        and steps < settings.max_periods_per_run
        and periods.due_date_for(period, definition.due_offset_days) <= horizon
    ):
        steps += 1
        if _in_effect(definition, period):
            instance = _create_instance(db, definition, entity, period)
            if instance is not None:
                created.append(instance)
        period = periods.next_period(definition.periodicity, period)
    return created


def roll_forward(
    db: Session, as_of: date, entity_ids: list | None = None
) -> list[ObligationInstance]:
    """Create every instance whose due date falls within the lookahead horizon. No commit."""
    query = select(Entity).where(Entity.is_archived.is_(False)).order_by(Entity.id)
    if entity_ids is not None:
        query = query.where(Entity.id.in_([coerce_uuid(e) for e in entity_ids]))
    entities = list(db.scalars(query))
    created: list[ObligationInstance] = []
    for definition in active_definitions(db):
        for entity in entities:
            if not definition_applies(definition, entity, as_of):
                continue
            created.extend(_roll_definition(db, definition, entity, as_of))
    logger.info("Roll-forward to %s created %d instance(s)", as_of.isoformat(), len(created))
    return created


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


def reminder_schedule(
    due_date: date, reminder_days, today: date
) -> list[tuple[int, date]]:
    """(offset, date) pairs for ``{due - d}`` within ``[today, due]``, earliest first."""
    schedule = []
    for offset in sorted({int(d) for d in reminder_days if int(d) >= 0}, reverse=True):
        reminder_date = due_date - timedelta(days=offset)
        if today <= reminder_date <= due_date:
            schedule.append((offset, reminder_date))
    return schedule


def _reminder_severity(days_left: int, risk_window: int) -> Severity:
    if days_left <= 1:
        return Severity.critical
    if days_left <= risk_window:
        return Severity.warning
    return Severity.info


def _already_reminded(db: Session, instance_id, offset: int) -> bool:
    return (
        db.scalars(
            select(ReminderLog.id).where(
                ReminderLog.instance_id == instance_id,
                ReminderLog.offset_days == offset,
            )
        ).first()
        is not None
    )


def emit_due_reminders(db: Session, entity_id, now: datetime) -> list[NotificationEvent]:
    """Emit each reminder falling due today exactly once. No commit."""
    entity = db.get(Entity, coerce_uuid(entity_id))
    today = local_today(entity, now)
    earliest = today - timedelta(days=settings.reminder_catchup_days)
    prefs = snapshot_for(db, entity.id)
    events: list[NotificationEvent] = []

    for instance in open_instances(db, entity.id):
        if instance.status == ObligationStatus.overdue:
            continue
        definition = db.get(ObligationDefinition, instance.definition_id)
        if definition is None:
            logger.error(
                "Skipping reminders for instance %s: definition %s missing",
                instance.id,
                instance.definition_id,
            )
            continue
        reminder_days = prefs.domains.for_domain(definition.domain).reminder_days
        risk_window = (
            definition.risk_window_days
            if definition.risk_window_days is not None
            else settings.risk_window_days
        )
        for offset, reminder_date in reminder_schedule(
            instance.due_date, reminder_days, earliest
        ):
            if reminder_date > today:
                break
            if _already_reminded(db, instance.id, offset):
                continue
            days_left = (instance.due_date - today).days
            when = "today" if days_left == 0 else f"in {days_left} days"
            event = publish_event(
                db,
                EventType.reminder_due,
                entity_id=entity.id,
                severity=_reminder_severity(days_left, risk_window),
                title=f"{definition.name} due {when}",
                body=(
                    f"{definition.name} for {instance.period_label} is due on "
                    f"{instance.due_date.isoformat()}."
                ),
                domain=definition.domain,
                obligation_instance_id=instance.id,
                payload={
                    "obligation_code": instance.obligation_code,
                    "period_label": instance.period_label,
                    "due_date": instance.due_date.isoformat(),
                    "offset_days": offset,
                },
                dedup_key=f"reminder:{instance.id}:{offset}",
            )
            db.add(
                ReminderLog(
                    instance_id=instance.id,
                    offset_days=offset,
                    reminder_date=reminder_date,
                    event_id=event.id if event else None,
                )
            )
            db.flush()
            if event is not None:
                events.append(event)
    return events


# ---------------------------------------------------------------------------
# Overdue and SLA sweeps
# ---------------------------------------------------------------------------


def mark_overdue(db: Session, entity_id, now: datetime) -> list[NotificationEvent]:
    """Flag pending instances past due and raise accrued penalties. No commit."""
    entity = db.get(Entity, coerce_uuid(entity_id))
    today = local_today(entity, now)
    events: list[NotificationEvent] = []

    for instance in open_instances(db, entity.id):
        if instance.due_date >= today:
            continue
        definition = db.get(ObligationDefinition, instance.definition_id)
        if definition is None:
            logger.error(
                "Cannot assess overdue instance %s: definition %s missing",
                instance.id,
                instance.definition_id,
            )
            continue
        days_overdue = (today - instance.due_date).days
        accrued = penalty_for(definition.penalty_formula, days_overdue)
        if accrued > (instance.penalty_accrued or 0):
            instance.penalty_accrued = accrued

        if instance.status != ObligationStatus.pending:
            continue
        record_transition(
            db,
            instance,
            ObligationStatus.overdue,
            actor_id="scheduler",
            reason=f"due date {instance.due_date.isoformat()} passed",
        )
        event = publish_event(
            db,
            EventType.obligation_overdue,
            entity_id=entity.id,
            severity=Severity.critical,
            title=f"{definition.name} is overdue",
            body=(
                f"{definition.name} for {instance.period_label} was due on "
                f"{instance.due_date.isoformat()} and is {days_overdue} day(s) late."
            ),
            domain=definition.domain,
            obligation_instance_id=instance.id,
            payload={
                "obligation_code": instance.obligation_code,
                "period_label": instance.period_label,
                "due_date": instance.due_date.isoformat(),
                "days_overdue": days_overdue,
                "penalty_accrued": str(instance.penalty_accrued),
            },
            dedup_key=f"overdue:{instance.id}",
        )
        if event is not None:
            events.append(event)
    db.flush()
    return events


def sweep_stalled_steps(db: Session, entity_id, now: datetime) -> list[NotificationEvent]:
    """Report each stalled frontier step once per SLA window. No commit."""
    now = ensure_utc(now)
    runs = db.scalars(
        select(WorkflowRun).where(
            WorkflowRun.entity_id == coerce_uuid(entity_id),
            WorkflowRun.status == WorkflowRunStatus.active,
        )
    ).all()
    events: list[NotificationEvent] = []
    for run in runs:
        instance = db.get(ObligationInstance, run.obligation_instance_id)
        definition = db.get(ObligationDefinition, instance.definition_id) if instance else None
        for step in stalled_steps(run, now):
            if step.stall_notified_at is not None:
                continue
            ready_at = ensure_utc(step.ready_at)
            window = int(ready_at.timestamp()) if ready_at else 0
            event = publish_event(
                db,
                EventType.step_stalled,
                entity_id=run.entity_id,
                severity=Severity.critical,
                title=f"Workflow step stalled: {step.name}",
                body=(
                    f"{step.name} passed its SLA deadline "
                    f"{ensure_utc(step.sla_deadline).isoformat()} without action."
                ),
                domain=definition.domain if definition else None,
                obligation_instance_id=run.obligation_instance_id,
                workflow_run_id=run.id,
                payload={
                    "step_key": step.step_key,
                    "assignee_id": step.assignee_id,
                    "queue_name": step.queue_name,
                },
                dedup_key=f"stalled:{step.id}:{window}",
            )
            step.stall_notified_at = now
            if event is not None:
                events.append(event)
    db.flush()
    return events
