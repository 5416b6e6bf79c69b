import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.models.workflow import (
    FRONTIER_STEP_STATUSES,
    StepStatus,
    WorkflowRun,
    WorkflowStepRun,
    WorkflowStepTransition,
)
from app.services.common import ensure_utc

logger = logging.getLogger(__name__)


def transition_step(
    db: Session,
    step: WorkflowStepRun,
    to_status: StepStatus,
    actor_id: str | None = None,
    note: str | None = None,
) -> WorkflowStepTransition:
    from_status = step.status
    step.status = to_status
    record = WorkflowStepTransition(
        run_id=step.run_id,
        step_run_id=step.id,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        note=note,
    )
    db.add(record)
    logger.info(
        "Step %s %s -> %s",
        step.step_key,
        from_status.value if from_status else None,
        to_status.value,
        extra={"run_id": str(step.run_id), "actor_id": actor_id},
    )
    return record


def open_sla_window(step: WorkflowStepRun, now: datetime) -> None:
    step.ready_at = now
    step.sla_deadline = now + timedelta(days=step.sla_days or 0)
    step.stall_notified_at = None


def ordered_steps(run: WorkflowRun) -> list[WorkflowStepRun]:
    return sorted(run.steps, key=lambda step: (step.position, step.step_key))


def frontier(run: WorkflowRun) -> list[str]:
    return [
        step.step_key
        for step in ordered_steps(run)
        if step.status in FRONTIER_STEP_STATUSES
    ]


def _past_deadline(step: WorkflowStepRun, now: datetime) -> bool:
    deadline = ensure_utc(step.sla_deadline)
    return deadline is not None and deadline < now


def stalled_steps(run: WorkflowRun, now: datetime) -> list[WorkflowStepRun]:
    """Frontier steps past SLA that nobody has started."""
    return [
        step
        for step in ordered_steps(run)
        if step.status in (StepStatus.ready, StepStatus.assigned)
        and _past_deadline(step, now)
    ]


def lagging_steps(run: WorkflowRun, now: datetime) -> list[WorkflowStepRun]:
    """Started steps that have run past their SLA."""
    return [
        step
        for step in ordered_steps(run)
        if step.status == StepStatus.in_progress and _past_deadline(step, now)
    ]
