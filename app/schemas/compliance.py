from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.compliance import (
    Domain,
    LifecycleStage,
    ObligationStatus,
    Periodicity,
    PriorityLevel,
)


# ---------------------------------------------------------------------------
# Entity
# ---------------------------------------------------------------------------


class EntityBase(BaseModel):
    name: str
    entity_type: str
    registration_number: str | None = None
    registration_metadata: dict | None = None
    lifecycle_stage: LifecycleStage = LifecycleStage.onboarding
    timezone: str | None = None
    primary_contact_email: str | None = None
    primary_contact_phone: str | None = None
    onboarded_on: date | None = None


class EntityCreate(EntityBase):
    pass


class EntityUpdate(BaseModel):
    name: str | None = None
    registration_number: str | None = None
    registration_metadata: dict | None = None
    lifecycle_stage: LifecycleStage | None = None
    timezone: str | None = None
    primary_contact_email: str | None = None
    primary_contact_phone: str | None = None


class EntityRead(EntityBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    is_archived: bool
    archived_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# ObligationDefinition
# ---------------------------------------------------------------------------


class PenaltyFormula(BaseModel):
    type: str = Field(default="per_day", pattern="^(per_day|fixed)$")
    per_day: Decimal | None = None
    amount: Decimal | None = None
    min: Decimal | None = None
    max: Decimal | None = None


class ObligationDefinitionBase(BaseModel):
    code: str
    name: str
    description: str | None = None
    domain: Domain
    periodicity: Periodicity
    base_sla_days: int = Field(default=5, ge=0)
    due_offset_days: int = Field(default=0, ge=0)
    penalty_formula: PenaltyFormula | None = None
    priority: PriorityLevel = PriorityLevel.medium
    risk_window_days: int | None = Field(default=None, ge=0)
    applicable_entity_types: list[str] = Field(default_factory=list)
    effective_from: date | None = None
    effective_until: date | None = None


class ObligationDefinitionCreate(ObligationDefinitionBase):
    pass


class ObligationDefinitionUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    periodicity: Periodicity | None = None
    base_sla_days: int | None = Field(default=None, ge=0)
    due_offset_days: int | None = Field(default=None, ge=0)
    penalty_formula: PenaltyFormula | None = None
    priority: PriorityLevel | None = None
    risk_window_days: int | None = Field(default=None, ge=0)
    applicable_entity_types: list[str] | None = None
    effective_from: date | None = None
    effective_until: date | None = None


class ObligationDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    version: int
    name: str
    description: str | None = None
    domain: Domain
    periodicity: Periodicity
    base_sla_days: int
    due_offset_days: int
    penalty_formula: dict | None = None
    priority: PriorityLevel
    risk_window_days: int | None = None
    applicable_entity_types: list[str]
    effective_from: date | None = None
    effective_until: date | None = None
    supersedes_id: UUID | None = None
    is_active: bool
    created_at: datetime


# ---------------------------------------------------------------------------
# ObligationInstance
# ---------------------------------------------------------------------------


class ObligationInstanceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_id: UUID
    definition_id: UUID
    obligation_code: str
    period_key: str
    period_label: str
    period_start: date
    period_end: date
    due_date: date
    status: ObligationStatus
    workflow_run_id: UUID | None = None
    penalty_accrued: Decimal
    completed_at: datetime | None = None
    created_at: datetime


class ObligationTransitionRequest(BaseModel):
    status: ObligationStatus
    actor_id: str | None = None
    reason: str | None = None


class ObligationTransitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    instance_id: UUID
    from_status: ObligationStatus | None = None
    to_status: ObligationStatus
    actor_id: str | None = None
    reason: str | None = None
    created_at: datetime


class DocumentUploadRequest(BaseModel):
    obligation_instance_id: UUID
    document_type: str
    document_id: str | None = None
    actor_id: str | None = None
    metadata: dict | None = None


# ---------------------------------------------------------------------------
# Computed compliance state
# ---------------------------------------------------------------------------


class InstanceAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    instance_id: UUID
    obligation_code: str
    name: str
    domain: str
    period_label: str
    due_date: date
    status: str
    classification: str
    state: str
    days_until_due: int
    days_overdue: int
    workflow_stalled: bool = False
    workflow_lagging: bool = False
    accrued_penalty: Decimal
    projected_penalty: Decimal


class DomainStateRead(BaseModel):
    model_config = ConfigDict(frozen=True)

    domain: str
    state: str
    risk_score: int
    open_instances: int
    overdue_instances: int
    at_risk_instances: int
    penalty_exposure: Decimal
    instances: list[InstanceAssessment]


class NextAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    instance_id: UUID
    obligation_code: str
    domain: str
    due_date: date
    state: str
    action: str


class DataIntegrityIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    instance_id: UUID
    definition_id: UUID
    problem: str


class EntityComplianceState(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_id: UUID
    as_of: datetime
    overall_state: str
    risk_score: int
    penalty_exposure: Decimal
    next_action_required: NextAction | None = None
    domains: list[DomainStateRead]
    data_integrity_errors: list[DataIntegrityIssue] = Field(default_factory=list)
