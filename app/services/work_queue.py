import logging
from datetime import datetime

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.workflow import (
    QueueItem,
    QueueItemStatus,
    QueueMember,
    StepStatus,
    StepType,
    WorkflowStepRun,
)
from app.observability import QUEUE_ASSIGNMENTS
from app.schemas.workflow import QueueMemberCreate
from app.services.common import ensure_utc, utcnow
from app.services.workflow_steps import transition_step

logger = logging.getLogger(__name__)

DEFAULT_QUEUES = {StepType.ops_task: "ops", StepType.qa_review: "qc"}
ACTIVE_ITEM_STATUSES = (QueueItemStatus.assigned, QueueItemStatus.in_progress)


def queue_for(step: WorkflowStepRun) -> str | None:
    return step.queue_name or DEFAULT_QUEUES.get(step.step_type)


def _candidate_key(item: QueueItem):
    deadline = ensure_utc(item.sla_deadline)
    return (
        -item.priority.rank,
        deadline is None,
        deadline or ensure_utc(item.entered_at),
        ensure_utc(item.entered_at),
        str(item.id),
    )


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


def enqueue(
    db: Session,
    queue_name: str,
    step: WorkflowStepRun,
    title: str | None = None,
    now: datetime | None = None,
) -> QueueItem:
    """Put a ready step in a queue, reusing its open item if it has one."""
    item = open_item_for_step(db, step)
    if item is not None:
        return item
    item = QueueItem(
        queue_name=queue_name,
        step_run_id=step.id,
        title=title or step.name,
        priority=step.priority,
        sla_deadline=step.sla_deadline,
        entered_at=now or utcnow(),
        status=QueueItemStatus.waiting,
    )
    db.add(item)
    db.flush()
    logger.info("Queued step %s on %s", step.step_key, queue_name)
    return item


def open_item_for_step(db: Session, step: WorkflowStepRun) -> QueueItem | None:
    return db.scalars(
        select(QueueItem).where(
            QueueItem.step_run_id == step.id,
            QueueItem.status.in_(
                (QueueItemStatus.waiting,) + ACTIVE_ITEM_STATUSES
            ),
        )
    ).first()


def close_item_for_step(
    db: Session,
    step: WorkflowStepRun,
    status: QueueItemStatus = QueueItemStatus.done,
    now: datetime | None = None,
) -> QueueItem | None:
    item = open_item_for_step(db, step)
    if item is not None:
        item.status = status
        item.completed_at = now or utcnow()
    return item


def mark_item_started(db: Session, step: WorkflowStepRun, actor_id: str) -> None:
    item = open_item_for_step(db, step)
    if item is not None:
        item.status = QueueItemStatus.in_progress
        item.assignee_id = actor_id


def candidates(db: Session, queue_name: str) -> list[QueueItem]:
    """Waiting items in assignment order.

    Highest priority first, then soonest SLA deadline (items without one
    last), then longest waiting.
    """
    items = db.scalars(
        select(QueueItem).where(
            QueueItem.queue_name == queue_name,
            QueueItem.status == QueueItemStatus.waiting,
        )
    ).all()
    return sorted(items, key=_candidate_key)


def list_items(
    db: Session, queue_name: str, status: str | None = None
) -> list[QueueItem]:
    query = select(QueueItem).where(QueueItem.queue_name == queue_name)
    if status is not None:
        try:
            query = query.where(QueueItem.status == QueueItemStatus(status))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
    return sorted(db.scalars(query).all(), key=_candidate_key)


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


def add_member(db: Session, queue_name: str, payload: QueueMemberCreate) -> QueueMember:
    member = db.scalars(
        select(QueueMember).where(
            QueueMember.queue_name == queue_name,
            QueueMember.actor_id == payload.actor_id,
        )
    ).first()
    if member is None:
        member = QueueMember(queue_name=queue_name, actor_id=payload.actor_id)
        db.add(member)
    member.max_load = payload.max_load
    member.is_active = payload.is_active
    db.commit()
    db.refresh(member)
    logger.info("Queue %s member %s saved", queue_name, payload.actor_id)
    return member


def list_members(db: Session, queue_name: str) -> list[QueueMember]:
    return list(
        db.scalars(
            select(QueueMember)
            .where(QueueMember.queue_name == queue_name)
            .order_by(QueueMember.actor_id)
        )
    )


def actor_loads(db: Session, actor_ids: list[str]) -> dict[str, int]:
    """Assigned plus in-progress items per actor, across every queue."""
    loads = {actor_id: 0 for actor_id in actor_ids}
    if not actor_ids:
        return loads
    rows = db.execute(
        select(QueueItem.assignee_id, func.count(QueueItem.id))
        .where(
            QueueItem.assignee_id.in_(actor_ids),
            QueueItem.status.in_(ACTIVE_ITEM_STATUSES),
        )
        .group_by(QueueItem.assignee_id)
    ).all()
    for actor_id, count in rows:
        loads[actor_id] = count
    return loads


def eligible_actor(db: Session, queue_name: str) -> str | None:
    """Least-loaded active member below its load bound, ties by actor id."""
    members = [m for m in list_members(db, queue_name) if m.is_active]
    loads = actor_loads(db, [m.actor_id for m in members])
    eligible = [
        (loads[m.actor_id], m.actor_id)
        for m in members
        if loads[m.actor_id] < (m.max_load or settings.queue_max_load_per_actor)
    ]
    if not eligible:
        return None
    return min(eligible)[1]


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------


def assign(db: Session, queue_name: str, now: datetime | None = None) -> QueueItem | None:
    """Assign the next candidate to the least-loaded eligible actor. No commit."""
    pending = candidates(db, queue_name)
    if not pending:
        return None
    actor_id = eligible_actor(db, queue_name)
    if actor_id is None:
        logger.info("No eligible actor on queue %s", queue_name)
        return None

    now = now or utcnow()
    item = pending[0]
    item.status = QueueItemStatus.assigned
    item.assignee_id = actor_id
    item.assigned_at = now

    step = item.step_run
    if step is not None and step.status == StepStatus.ready:
        step.assignee_id = actor_id
        step.assigned_at = now
        transition_step(db, step, StepStatus.assigned, actor_id=actor_id, note=queue_name)

    db.flush()
    QUEUE_ASSIGNMENTS.labels(queue_name).inc()
    logger.info("Assigned queue item %s on %s to %s", item.id, queue_name, actor_id)
    return item


def auto_assign(
    db: Session, queue_name: str, now: datetime | None = None
) -> list[QueueItem]:
    assigned: list[QueueItem] = []
    while True:
        item = assign(db, queue_name, now=now)
        if item is None:
            break
        assigned.append(item)
    return assigned
