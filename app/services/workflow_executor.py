from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models.compliance import (
    ObligationDocument,
    ObligationInstance,
    ObligationStatus,
)
from app.models.notification import Severity
from app.models.workflow import (
    TERMINAL_STEP_STATUSES,
    QueueItemStatus,
    StepStatus,
    StepType,
    WorkflowRun,
    WorkflowRunStatus,
    WorkflowStepDefinition,
    WorkflowStepRun,
    WorkflowTemplate,
)
from app.schemas.workflow import WorkflowTemplateCreate
from app.services import work_queue
from app.services.common import apply_pagination, coerce_uuid, ensure_utc, utcnow
from app.services.event import EventType, publish_event
from app.services.obligations import obligation_instances, record_transition
from app.services.response import ListResponseMixin
from app.services.workflow_graph import WorkflowGraph, WorkflowGraphError
from app.services.workflow_steps import (
    frontier,
    open_sla_window,
    ordered_steps,
    transition_step,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
DEFAULT_TEMPLATE_KEY = "default"

# ---------------------------------------------------------------------------
# Automation registry
# ---------------------------------------------------------------------------

Precondition = Callable[[Session, WorkflowRun, WorkflowStepRun], bool]
Action = Callable[[Session, WorkflowRun, WorkflowStepRun], None]

PRECONDITIONS: dict[str, Precondition] = {}
ACTIONS: dict[str, Action] = {}


def register_precondition(name: str):
    def decorator(fn: Precondition) -> Precondition:
        PRECONDITIONS[name] = fn
        return fn

    return decorator


def register_action(name: str):
    def decorator(fn: Action) -> Action:
        ACTIONS[name] = fn
        return fn

    return decorator


def received_document_types(
    db: Session, run: WorkflowRun, since: datetime | None = None
) -> set[str]:
    rows = db.execute(
        select(ObligationDocument.document_type, ObligationDocument.received_at).where(
            ObligationDocument.instance_id == run.obligation_instance_id
        )
    ).all()
    if since is None:
        return {document_type for document_type, _ in rows}
    since = ensure_utc(since)
    return {
        document_type
        for document_type, received_at in rows
        if ensure_utc(received_at) >= since
    }


@register_precondition("always")
def _always(db: Session, run: WorkflowRun, step: WorkflowStepRun) -> bool:
    return True


@register_precondition("documents_received")
def _documents_received(db: Session, run: WorkflowRun, step: WorkflowStepRun) -> bool:
    """A step sent back for rework only counts documents received since then."""
    required = set(step.required_documents or [])
    return required.issubset(received_document_types(db, run, since=step.reopened_at))


@register_action("noop")
def _noop(db: Session, run: WorkflowRun, step: WorkflowStepRun) -> None:
    return None


@register_action("notify_entity")
def _notify_entity(db: Session, run: WorkflowRun, step: WorkflowStepRun) -> None:
    publish_event(
        db,
        EventType.step_action,
        entity_id=run.entity_id,
        severity=Severity.info,
        title=f"{step.name} completed",
        body=f"Automated step {step.name} ran for this obligation.",
        obligation_instance_id=run.obligation_instance_id,
        workflow_run_id=run.id,
        payload={"step_key": step.step_key},
    )


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def _validate_automation(payload: WorkflowTemplateCreate) -> list[str]:
    problems = []
    for step in payload.steps:
        if step.precondition and step.precondition not in PRECONDITIONS:
            problems.append(f"step {step.key} has unknown precondition {step.precondition}")
        if step.action and step.action not in ACTIONS:
            problems.append(f"step {step.key} has unknown action {step.action}")
    return problems


class WorkflowTemplates(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: WorkflowTemplateCreate) -> WorkflowTemplate:
        try:
            graph = WorkflowGraph.build(payload.steps)
        except WorkflowGraphError as exc:
            raise HTTPException(
                status_code=400,
                detail={
                    "code": "invalid_workflow",
                    "message": "Workflow template is not a valid dependency graph",
                    "details": exc.problems,
                },
            )
        problems = _validate_automation(payload)
        if problems:
            raise HTTPException(
                status_code=400,
                detail={
                    "code": "invalid_workflow",
                    "message": "Workflow template references unknown automation",
                    "details": problems,
                },
            )

        latest = db.scalar(
            select(func.max(WorkflowTemplate.version)).where(
                WorkflowTemplate.key == payload.key
            )
        )
        for previous in db.scalars(
            select(WorkflowTemplate).where(
                WorkflowTemplate.key == payload.key,
                WorkflowTemplate.is_active.is_(True),
            )
        ):
            previous.is_active = False

        template = WorkflowTemplate(
            key=payload.key,
            version=(latest or 0) + 1,
            name=payload.name,
            description=payload.description,
            graph=graph.to_json(),
            is_active=True,
        )
        db.add(template)
        db.flush()
        position = {key: index for index, key in enumerate(graph.order)}
        for step in payload.steps:
            db.add(
                WorkflowStepDefinition(
                    template_id=template.id,
                    key=step.key,
                    name=step.name or step.key,
                    step_type=step.step_type,
                    depends_on=list(graph.dependencies[step.key]),
                    sla_days=step.sla_days,
                    priority=step.priority,
                    required_documents=list(step.required_documents),
                    queue_name=step.queue_name,
                    precondition=step.precondition,
                    action=step.action,
                    position=position[step.key],
                )
            )
        db.commit()
        db.refresh(template)
        logger.info("Created workflow template %s v%s", template.key, template.version)
        return template

    @staticmethod
    def get(db: Session, template_id: str) -> WorkflowTemplate:
        template = db.get(WorkflowTemplate, coerce_uuid(template_id))
        if not template:
            raise HTTPException(status_code=404, detail="Workflow template not found")
        return template

    @staticmethod
    def list(
        db: Session, key: str | None, is_active: bool | None, limit: int, offset: int
    ) -> list[WorkflowTemplate]:
        query = db.query(WorkflowTemplate)
        if key is not None:
            query = query.filter(WorkflowTemplate.key == key)
        if is_active is None:
            query = query.filter(WorkflowTemplate.is_active.is_(True))
        else:
            query = query.filter(WorkflowTemplate.is_active == is_active)
        query = query.order_by(WorkflowTemplate.key, WorkflowTemplate.version.desc())
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def active_for(db: Session, key: str) -> WorkflowTemplate | None:
        return db.scalars(
            select(WorkflowTemplate).where(
                WorkflowTemplate.key == key, WorkflowTemplate.is_active.is_(True)
            )
        ).first()


workflow_templates = WorkflowTemplates()


def resolve_template(
    db: Session, instance: ObligationInstance, template_key: str | None = None
) -> WorkflowTemplate | None:
    if template_key:
        return workflow_templates.active_for(db, template_key)
    return workflow_templates.active_for(
        db, instance.obligation_code
    ) or workflow_templates.active_for(db, DEFAULT_TEMPLATE_KEY)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


def get_run(db: Session, run_id) -> WorkflowRun:
    run = db.get(WorkflowRun, coerce_uuid(run_id))
    if not run:
        raise HTTPException(status_code=404, detail="Workflow run not found")
    return run


def _graph(run: WorkflowRun) -> WorkflowGraph:
    return WorkflowGraph.from_json(run.template.graph)


def _step_map(run: WorkflowRun) -> dict[str, WorkflowStepRun]:
    return {step.step_key: step for step in run.steps}


def start_run(
    db: Session,
    instance_id,
    template_key: str | None = None,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> WorkflowRun:
    """Create a run for an open obligation and move it to in_progress. No commit."""
    now = now or utcnow()
    instance = obligation_instances.get(db, instance_id)
    if instance.status not in (ObligationStatus.pending, ObligationStatus.overdue):
        raise HTTPException(
            status_code=409,
            detail=f"Cannot start a workflow for a {instance.status.value} obligation",
        )
    if instance.workflow_run_id is not None:
        current = db.get(WorkflowRun, instance.workflow_run_id)
        if current is not None and current.status == WorkflowRunStatus.active:
            raise HTTPException(status_code=409, detail="Workflow run already active")

    template = resolve_template(db, instance, template_key)
    if template is None:
        raise HTTPException(
            status_code=404,
            detail=f"No workflow template for {template_key or instance.obligation_code}",
        )

    run = WorkflowRun(
        template_id=template.id,
        obligation_instance_id=instance.id,
        entity_id=instance.entity_id,
        status=WorkflowRunStatus.active,
        started_by=actor_id,
    )
    db.add(run)
    db.flush()
    run.template = template
    for definition in template.steps:
        step = WorkflowStepRun(
            step_key=definition.key,
            name=definition.name,
            step_type=definition.step_type,
            status=StepStatus.blocked,
            priority=definition.priority,
            sla_days=definition.sla_days,
            queue_name=definition.queue_name,
            required_documents=list(definition.required_documents or []),
            precondition=definition.precondition,
            action=definition.action,
            position=definition.position,
        )
        step.run = run
        db.add(step)
    db.flush()

    instance.workflow_run_id = run.id
    record_transition(
        db,
        instance,
        ObligationStatus.in_progress,
        actor_id=actor_id,
        reason=f"workflow {template.key} v{template.version} started",
    )
    publish_event(
        db,
        EventType.workflow_started,
        entity_id=run.entity_id,
        severity=Severity.info,
        title=f"Work started on {instance.obligation_code} {instance.period_label}",
        body=f"Workflow {template.name} started.",
        obligation_instance_id=instance.id,
        workflow_run_id=run.id,
    )
    logger.info(
        "Started workflow run %s for obligation %s",
        run.id,
        instance.id,
        extra={"entity_id": str(run.entity_id), "template": template.key},
    )
    _settle(db, run, now)
    return run


def _make_ready(
    db: Session,
    run: WorkflowRun,
    step: WorkflowStepRun,
    now: datetime,
    note: str | None = None,
    rework: bool = False,
) -> None:
    transition_step(db, step, StepStatus.ready, actor_id=SYSTEM_ACTOR, note=note)
    open_sla_window(step, now)
    step.completed_at = None
    step.completed_by = None
    step.assignee_id = None
    step.assigned_at = None
    step.started_at = None
    if rework:
        step.reopened_at = now

    if step.step_type == StepType.automated:
        # Reworked automated steps wait for a person to complete them.
        if not rework:
            _run_automated(db, run, step, now)
    elif step.step_type == StepType.client_task:
        if (
            not rework
            and step.required_documents
            and _documents_received(db, run, step)
        ):
            _finish(db, step, SYSTEM_ACTOR, now, note="required documents received")
    else:
        queue_name = work_queue.queue_for(step)
        if queue_name:
            work_queue.enqueue(db, queue_name, step, now=now)


def _run_automated(
    db: Session, run: WorkflowRun, step: WorkflowStepRun, now: datetime
) -> None:
    check = PRECONDITIONS.get(step.precondition or "always")
    if check is None:
        logger.error(
            "Step %s has unknown precondition %s; left for manual action",
            step.step_key,
            step.precondition,
        )
        return
    if not check(db, run, step):
        transition_step(
            db, step, StepStatus.skipped, actor_id=SYSTEM_ACTOR, note="precondition false"
        )
        step.completed_at = now
        return
    action = ACTIONS.get(step.action or "noop")
    if action is None:
        logger.error(
            "Step %s has unknown action %s; left for manual action",
            step.step_key,
            step.action,
        )
        return
    action(db, run, step)
    _finish(db, step, SYSTEM_ACTOR, now, note="automated")


def _finish(
    db: Session,
    step: WorkflowStepRun,
    actor_id: str,
    now: datetime,
    note: str | None = None,
) -> None:
    transition_step(db, step, StepStatus.done, actor_id=actor_id, note=note)
    step.completed_at = now
    step.completed_by = actor_id
    work_queue.close_item_for_step(db, step, now=now)


def _settle(db: Session, run: WorkflowRun, now: datetime) -> None:
    """Promote every blocked step whose dependencies are finished, then close the run."""
    graph = _graph(run)
    steps = _step_map(run)
    changed = True
    while changed:
        changed = False
        finished = {
            key for key, step in steps.items() if step.status in TERMINAL_STEP_STATUSES
        }
        for key in graph.order:
            step = steps[key]
            if step.status == StepStatus.blocked and graph.is_satisfied(key, finished):
                _make_ready(db, run, step, now)
                changed = True
    db.flush()

    if all(step.status in TERMINAL_STEP_STATUSES for step in steps.values()):
        _complete_run(db, run, now)


def _complete_run(db: Session, run: WorkflowRun, now: datetime) -> None:
    run.status = WorkflowRunStatus.completed
    run.completed_at = now
    instance = db.get(ObligationInstance, run.obligation_instance_id)
    publish_event(
        db,
        EventType.workflow_completed,
        entity_id=run.entity_id,
        severity=Severity.info,
        title="Workflow completed",
        body=f"All steps finished for {instance.obligation_code} {instance.period_label}.",
        obligation_instance_id=instance.id,
        workflow_run_id=run.id,
    )
    if instance.status in (
        ObligationStatus.pending,
        ObligationStatus.in_progress,
        ObligationStatus.overdue,
    ):
        record_transition(
            db, instance, ObligationStatus.completed, actor_id=SYSTEM_ACTOR,
            reason="workflow completed",
        )
        publish_event(
            db,
            EventType.obligation_completed,
            entity_id=run.entity_id,
            severity=Severity.info,
            title=f"{instance.obligation_code} {instance.period_label} completed",
            body="The obligation has been discharged.",
            obligation_instance_id=instance.id,
            workflow_run_id=run.id,
            dedup_key=f"completed:{instance.id}",
        )
    db.flush()
    logger.info("Workflow run %s completed", run.id, extra={"entity_id": str(run.entity_id)})


def _reject(
    db: Session,
    run: WorkflowRun,
    step: WorkflowStepRun,
    actor_id: str,
    note: str | None,
    now: datetime,
) -> None:
    graph = _graph(run)
    steps = _step_map(run)
    transition_step(
        db, step, StepStatus.blocked, actor_id=actor_id,
        note=f"rejected: {note}" if note else "rejected",
    )
    step.assignee_id = None
    work_queue.close_item_for_step(db, step, status=QueueItemStatus.cancelled, now=now)
    for upstream_key in graph.dependencies[step.step_key]:
        upstream = steps[upstream_key]
        _make_ready(
            db, run, upstream, now,
            note=f"rework requested by {step.step_key}",
            rework=True,
        )

    publish_event(
        db,
        EventType.step_rejected,
        entity_id=run.entity_id,
        severity=Severity.warning,
        title=f"{step.name} sent back for rework",
        body=note or "Review rejected; upstream steps reopened.",
        obligation_instance_id=run.obligation_instance_id,
        workflow_run_id=run.id,
        payload={"step_key": step.step_key, "reopened": list(graph.dependencies[step.step_key])},
    )


def advance(
    db: Session,
    run_id,
    step_key: str,
    actor_id: str,
    decision: str | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Complete a step and return the new frontier. No commit.

    Completing an already finished step is a no-op. A rejected QA review
    reopens the steps it depends on.
    """
    now = now or utcnow()
    run = get_run(db, run_id)
    step = _step_map(run).get(step_key)
    if step is None:
        raise HTTPException(status_code=404, detail=f"Step not found: {step_key}")
    if step.status in TERMINAL_STEP_STATUSES:
        logger.info("Step %s already %s; nothing to do", step_key, step.status.value)
        return frontier(run)
    if run.status != WorkflowRunStatus.active:
        raise HTTPException(status_code=409, detail="Workflow run is not active")
    if step.status == StepStatus.blocked:
        raise HTTPException(
            status_code=409, detail=f"Step {step_key} is blocked by unfinished dependencies"
        )
    if decision is not None and step.step_type != StepType.qa_review:
        raise HTTPException(status_code=400, detail="Only review steps take a decision")

    if decision == "rejected":
        _reject(db, run, step, actor_id, note, now)
        _settle(db, run, now)
        return frontier(run)

    _finish(db, step, actor_id, now, note=note or decision)
    _settle(db, run, now)
    return frontier(run)


def start_step(
    db: Session, run_id, step_key: str, actor_id: str, now: datetime | None = None
) -> WorkflowStepRun:
    now = now or utcnow()
    run = get_run(db, run_id)
    step = _step_map(run).get(step_key)
    if step is None:
        raise HTTPException(status_code=404, detail=f"Step not found: {step_key}")
    if step.status == StepStatus.in_progress and step.assignee_id == actor_id:
        return step
    if step.status not in (StepStatus.ready, StepStatus.assigned):
        raise HTTPException(
            status_code=409, detail=f"Cannot start a {step.status.value} step"
        )
    if step.status == StepStatus.assigned and step.assignee_id != actor_id:
        raise HTTPException(
            status_code=409, detail=f"Step is assigned to {step.assignee_id}"
        )
    if step.status == StepStatus.ready:
        step.assignee_id = actor_id
        step.assigned_at = now
    transition_step(db, step, StepStatus.in_progress, actor_id=actor_id)
    step.started_at = now
    work_queue.mark_item_started(db, step, actor_id)
    db.flush()
    return step


def refresh_client_steps(db: Session, run: WorkflowRun, now: datetime) -> None:
    """Finish client tasks whose required documents have now all arrived."""
    if run.status != WorkflowRunStatus.active:
        return
    for step in ordered_steps(run):
        if (
            step.step_type == StepType.client_task
            and step.status in (StepStatus.ready, StepStatus.assigned, StepStatus.in_progress)
            and step.required_documents
            and _documents_received(db, run, step)
        ):
            _finish(db, step, SYSTEM_ACTOR, now, note="required documents received")
    _settle(db, run, now)


def run_view(run: WorkflowRun) -> dict:
    return {
        "id": run.id,
        "template_id": run.template_id,
        "obligation_instance_id": run.obligation_instance_id,
        "entity_id": run.entity_id,
        "status": run.status,
        "frontier": frontier(run),
        "steps": ordered_steps(run),
        "created_at": run.created_at,
        "completed_at": run.completed_at,
    }
