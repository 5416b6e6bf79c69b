"""Entity-level compliance state.

``compute_entity_state`` is a pure read: given the same rows and the same
``now`` it returns an identical model, so it can be re-run after any event.
``persist_state`` stores the result as the entity's latest snapshot and keeps
an append-only history of changes.
"""

import logging
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.compliance import (
    DOMAIN_PRIORITY,
    ComplianceState,
    ComplianceStateHistory,
    ComplianceStateSnapshot,
    Domain,
    Entity,
    ObligationDefinition,
    ObligationInstance,
    ObligationStatus,
)
from app.models.notification import Severity
from app.models.workflow import WorkflowRun, WorkflowRunStatus
from app.schemas.compliance import (
    DataIntegrityIssue,
    DomainStateRead,
    EntityComplianceState,
    InstanceAssessment,
    NextAction,
)
from app.services.common import coerce_uuid, ensure_utc
from app.services.event import EventType, publish_event
from app.services.obligations import entities, open_instances
from app.services.penalties import ZERO, penalty_for
from app.services.workflow_steps import lagging_steps, stalled_steps

logger = logging.getLogger(__name__)

OVERDUE = "overdue"
AT_RISK = "at_risk"
ON_TRACK = "on_track"

STATE_SCORES = {ComplianceState.RED: 100, ComplianceState.AMBER: 50, ComplianceState.GREEN: 0}


def entity_timezone(entity: Entity) -> ZoneInfo:
    return ZoneInfo(entity.timezone or settings.default_timezone)


def local_today(entity: Entity, now: datetime) -> date:
    return ensure_utc(now).astimezone(entity_timezone(entity)).date()


def classify(
    status: ObligationStatus, due_date: date, today: date, risk_window_days: int
) -> str:
    if status == ObligationStatus.overdue or today > due_date:
        return OVERDUE
    if (due_date - today).days <= risk_window_days:
        return AT_RISK
    return ON_TRACK


def _mean_score(states: list[ComplianceState]) -> int:
    if not states:
        return 0
    total = Decimal(sum(STATE_SCORES[s] for s in states)) / len(states)
    return int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _worst(states) -> ComplianceState:
    return max(states, key=lambda s: s.rank, default=ComplianceState.GREEN)


def _action_text(assessment: InstanceAssessment) -> str:
    if assessment.classification == OVERDUE:
        return (
            f"File {assessment.name} immediately "
            f"({assessment.days_overdue} days overdue)"
        )
    if assessment.workflow_stalled:
        return f"Clear stalled workflow step for {assessment.name}"
    if assessment.days_until_due == 0:
        return f"Prepare {assessment.name} (due today)"
    return f"Prepare {assessment.name} (due in {assessment.days_until_due} days)"


def _penalties(
    instance: ObligationInstance,
    definition: ObligationDefinition,
    classification: str,
    today: date,
) -> tuple[Decimal, Decimal]:
    if classification == ON_TRACK:
        return ZERO, ZERO
    days_overdue = max(0, (today - instance.due_date).days)
    stored = Decimal(instance.penalty_accrued or 0).quantize(Decimal("0.01"))
    accrued = max(stored, penalty_for(definition.penalty_formula, days_overdue))
    # Penalty if the obligation is only resolved at the end of its SLA.
    resolved_on = today + timedelta(days=definition.base_sla_days or 0)
    projected_total = penalty_for(
        definition.penalty_formula, max(0, (resolved_on - instance.due_date).days)
    )
    projected = max(ZERO, projected_total - accrued)
    return accrued, projected


def _workflow_flags(
    db: Session, instance: ObligationInstance, now: datetime
) -> tuple[bool, bool, str | None]:
    if instance.workflow_run_id is None:
        return False, False, None
    run = db.get(WorkflowRun, instance.workflow_run_id)
    if run is None:
        return False, False, "workflow run not found"
    if run.status != WorkflowRunStatus.active:
        return False, False, None
    return bool(stalled_steps(run, now)), bool(lagging_steps(run, now)), None


def compute_entity_state(db: Session, entity_id, now: datetime) -> EntityComplianceState:
    entity = entities.get(db, entity_id)
    now = ensure_utc(now)
    today = local_today(entity, now)

    instances = open_instances(db, entity.id)
    definition_ids = {instance.definition_id for instance in instances}
    definitions: dict = {}
    if definition_ids:
        rows = db.scalars(
            select(ObligationDefinition).where(ObligationDefinition.id.in_(definition_ids))
        )
        definitions = {d.id: d for d in rows}

    issues: list[DataIntegrityIssue] = []
    by_domain: dict[Domain, list[InstanceAssessment]] = {d: [] for d in DOMAIN_PRIORITY}
    states_by_instance: dict = {}

    for instance in instances:
        definition = definitions.get(instance.definition_id)
        if definition is None:
            logger.error(
                "Obligation instance %s references missing definition %s",
                instance.id,
                instance.definition_id,
                extra={"entity_id": str(entity.id)},
            )
            issues.append(
                DataIntegrityIssue(
                    instance_id=instance.id,
                    definition_id=instance.definition_id,
                    problem="obligation definition not found",
                )
            )
            continue

        window = (
            definition.risk_window_days
            if definition.risk_window_days is not None
            else settings.risk_window_days
        )
        classification = classify(instance.status, instance.due_date, today, window)
        stalled, lagging, run_problem = _workflow_flags(db, instance, now)
        if run_problem:
            logger.error(
                "Obligation instance %s: %s (%s)",
                instance.id,
                run_problem,
                instance.workflow_run_id,
            )
            issues.append(
                DataIntegrityIssue(
                    instance_id=instance.id,
                    definition_id=instance.definition_id,
                    problem=run_problem,
                )
            )

        if classification == OVERDUE or stalled:
            state = ComplianceState.RED
        elif classification == AT_RISK or lagging:
            state = ComplianceState.AMBER
        else:
            state = ComplianceState.GREEN

        accrued, projected = _penalties(instance, definition, classification, today)
        days_until_due = (instance.due_date - today).days
        assessment = InstanceAssessment(
            instance_id=instance.id,
            obligation_code=instance.obligation_code,
            name=definition.name,
            domain=definition.domain.value,
            period_label=instance.period_label,
            due_date=instance.due_date,
            status=instance.status.value,
            classification=classification,
            state=state.value,
            days_until_due=days_until_due,
            days_overdue=max(0, -days_until_due),
            workflow_stalled=stalled,
            workflow_lagging=lagging,
            accrued_penalty=accrued,
            projected_penalty=projected,
        )
        by_domain[definition.domain].append(assessment)
        states_by_instance[instance.id] = state

    domains: list[DomainStateRead] = []
    all_states: list[ComplianceState] = []
    exposure = ZERO
    for domain in DOMAIN_PRIORITY:
        assessed = sorted(
            by_domain[domain], key=lambda a: (a.due_date, str(a.instance_id))
        )
        states = [states_by_instance[a.instance_id] for a in assessed]
        all_states.extend(states)
        domain_exposure = sum(
            (a.accrued_penalty + a.projected_penalty for a in assessed), ZERO
        )
        exposure += domain_exposure
        domains.append(
            DomainStateRead(
                domain=domain.value,
                state=_worst(states).value,
                risk_score=_mean_score(states),
                open_instances=len(assessed),
                overdue_instances=sum(1 for a in assessed if a.classification == OVERDUE),
                at_risk_instances=sum(1 for a in assessed if a.classification == AT_RISK),
                penalty_exposure=domain_exposure,
                instances=assessed,
            )
        )

    overall = _worst(ComplianceState(d.state) for d in domains)

    flagged = [
        a
        for d in domains
        for a in d.instances
        if a.state != ComplianceState.GREEN.value
    ]
    next_action = None
    if flagged:
        chosen = min(
            flagged,
            key=lambda a: (
                a.due_date,
                DOMAIN_PRIORITY.index(Domain(a.domain)),
                str(a.instance_id),
            ),
        )
        next_action = NextAction(
            instance_id=chosen.instance_id,
            obligation_code=chosen.obligation_code,
            domain=chosen.domain,
            due_date=chosen.due_date,
            state=chosen.state,
            action=_action_text(chosen),
        )

    return EntityComplianceState(
        entity_id=entity.id,
        as_of=now,
        overall_state=overall.value,
        risk_score=_mean_score(all_states),
        penalty_exposure=exposure,
        next_action_required=next_action,
        domains=domains,
        data_integrity_errors=issues,
    )


def latest_state(db: Session, entity_id) -> EntityComplianceState | None:
    snapshot = db.get(ComplianceStateSnapshot, coerce_uuid(entity_id))
    if snapshot is None:
        return None
    return EntityComplianceState.model_validate(snapshot.state_json)


def persist_state(db: Session, state: EntityComplianceState) -> ComplianceStateSnapshot:
    """Upsert the latest snapshot and append history when it changed. No commit."""
    overall = ComplianceState(state.overall_state)
    payload = state.model_dump(mode="json")
    snapshot = db.get(ComplianceStateSnapshot, state.entity_id)
    previous_state = snapshot.overall_state if snapshot else None
    previous_exposure = (
        Decimal(snapshot.penalty_exposure).quantize(Decimal("0.01")) if snapshot else None
    )

    if snapshot is None:
        snapshot = ComplianceStateSnapshot(entity_id=state.entity_id)
        db.add(snapshot)
    snapshot.overall_state = overall
    snapshot.risk_score = state.risk_score
    snapshot.penalty_exposure = state.penalty_exposure
    snapshot.state_json = payload
    snapshot.calculated_at = state.as_of

    exposure = state.penalty_exposure.quantize(Decimal("0.01"))
    if previous_state != overall or previous_exposure != exposure:
        db.add(
            ComplianceStateHistory(
                entity_id=state.entity_id,
                previous_state=previous_state,
                overall_state=overall,
                risk_score=state.risk_score,
                penalty_exposure=state.penalty_exposure,
                snapshot=payload,
                recorded_at=state.as_of,
            )
        )

    if previous_state != overall and not (
        previous_state is None and overall == ComplianceState.GREEN
    ):
        _publish_state_change(db, state, previous_state, overall)

    db.flush()
    logger.info(
        "Compliance state for entity %s is %s",
        state.entity_id,
        overall.value,
        extra={
            "risk_score": state.risk_score,
            "penalty_exposure": state.penalty_exposure,
            "previous_state": previous_state.value if previous_state else None,
        },
    )
    return snapshot


def _publish_state_change(
    db: Session,
    state: EntityComplianceState,
    previous: ComplianceState | None,
    current: ComplianceState,
) -> None:
    before = previous.value if previous else "UNKNOWN"
    body = f"Overall compliance state changed from {before} to {current.value}."
    if state.next_action_required:
        body += f" Next action: {state.next_action_required.action}."
    publish_event(
        db,
        EventType.state_changed,
        entity_id=state.entity_id,
        severity=Severity.for_state(current),
        title=f"Compliance state is now {current.value}",
        body=body,
        payload={
            "previous_state": previous.value if previous else None,
            "overall_state": current.value,
            "risk_score": state.risk_score,
            "penalty_exposure": str(state.penalty_exposure),
        },
    )
