from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.compliance import PriorityLevel
from app.models.workflow import (
    QueueItemStatus,
    StepStatus,
    StepType,
    WorkflowRunStatus,
)


# ---------------------------------------------------------------------------
# WorkflowTemplate
# ---------------------------------------------------------------------------


class WorkflowStepSpec(BaseModel):
    key: str
    name: str | None = None
    step_type: StepType
    depends_on: list[str] = Field(default_factory=list)
    sla_days: int = Field(default=2, ge=0)
    priority: PriorityLevel = PriorityLevel.medium
    required_documents: list[str] = Field(default_factory=list)
    queue_name: str | None = None
    precondition: str | None = None
    action: str | None = None


class WorkflowTemplateCreate(BaseModel):
    key: str
    name: str
    description: str | None = None
    steps: list[WorkflowStepSpec]


class WorkflowStepDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    name: str
    step_type: StepType
    depends_on: list[str]
    sla_days: int
    priority: PriorityLevel
    required_documents: list[str]
    queue_name: str | None = None
    precondition: str | None = None
    action: str | None = None


class WorkflowTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    key: str
    version: int
    name: str
    description: str | None = None
    is_active: bool
    graph: dict
    steps: list[WorkflowStepDefinitionRead]
    created_at: datetime


# ---------------------------------------------------------------------------
# WorkflowRun
# ---------------------------------------------------------------------------


class WorkflowStepRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    step_key: str
    name: str
    step_type: StepType
    status: StepStatus
    priority: PriorityLevel
    queue_name: str | None = None
    assignee_id: str | None = None
    ready_at: datetime | None = None
    sla_deadline: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    completed_by: str | None = None
    reopened_at: datetime | None = None


class WorkflowRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    template_id: UUID
    obligation_instance_id: UUID
    entity_id: UUID
    status: WorkflowRunStatus
    frontier: list[str]
    steps: list[WorkflowStepRunRead]
    created_at: datetime
    completed_at: datetime | None = None


class StepCompleteRequest(BaseModel):
    actor_id: str
    decision: str | None = Field(default=None, pattern="^(approved|rejected)$")
    note: str | None = None


class StepStartRequest(BaseModel):
    actor_id: str


class FrontierResponse(BaseModel):
    run_id: UUID
    run_status: WorkflowRunStatus
    frontier: list[str]


# ---------------------------------------------------------------------------
# Work queues
# ---------------------------------------------------------------------------


class QueueMemberCreate(BaseModel):
    actor_id: str
    max_load: int | None = Field(default=None, ge=1)
    is_active: bool = True


class QueueMemberRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    queue_name: str
    actor_id: str
    max_load: int | None = None
    is_active: bool


class QueueItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    queue_name: str
    step_run_id: UUID | None = None
    title: str | None = None
    priority: PriorityLevel
    sla_deadline: datetime | None = None
    entered_at: datetime
    status: QueueItemStatus
    assignee_id: str | None = None
    assigned_at: datetime | None = None


class AssignmentRead(BaseModel):
    item_id: UUID
    queue_name: str
    actor_id: str
    step_run_id: UUID | None = None
