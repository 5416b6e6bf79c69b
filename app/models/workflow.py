import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base
from app.models.compliance import PriorityLevel


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class StepType(enum.Enum):
    ops_task = "ops_task"
    client_task = "client_task"
    qa_review = "qa_review"
    automated = "automated"


class StepStatus(enum.Enum):
    blocked = "blocked"
    ready = "ready"
    assigned = "assigned"
    in_progress = "in_progress"
    done = "done"
    skipped = "skipped"


FRONTIER_STEP_STATUSES = (StepStatus.ready, StepStatus.assigned, StepStatus.in_progress)
TERMINAL_STEP_STATUSES = (StepStatus.done, StepStatus.skipped)


class WorkflowRunStatus(enum.Enum):
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


class QueueItemStatus(enum.Enum):
    waiting = "waiting"
    assigned = "assigned"
    in_progress = "in_progress"
    done = "done"
    cancelled = "cancelled"


# ---------------------------------------------------------------------------
# Workflow templates
# ---------------------------------------------------------------------------


class WorkflowTemplate(Base):
    __tablename__ = "workflow_templates"
    __table_args__ = (
        UniqueConstraint("key", "version", name="uq_workflow_templates_key_version"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    key: Mapped[str] = mapped_column(String(80), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    # Compiled graph: topological order plus dependency and dependent adjacency.
    graph: Mapped[dict] = mapped_column(JSON, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    steps = relationship(
        "WorkflowStepDefinition",
        back_populates="template",
        order_by="WorkflowStepDefinition.position",
    )


class WorkflowStepDefinition(Base):
    __tablename__ = "workflow_step_definitions"
    __table_args__ = (
        UniqueConstraint("template_id", "key", name="uq_workflow_step_definitions_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    template_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("workflow_templates.id"), nullable=False
    )
    key: Mapped[str] = mapped_column(String(80), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    step_type: Mapped[StepType] = mapped_column(Enum(StepType), nullable=False)
    depends_on: Mapped[list] = mapped_column(JSON, default=list)
    sla_days: Mapped[int] = mapped_column(Integer, default=2)
    priority: Mapped[PriorityLevel] = mapped_column(
        Enum(PriorityLevel), default=PriorityLevel.medium
    )
    required_documents: Mapped[list] = mapped_column(JSON, default=list)
    queue_name: Mapped[str | None] = mapped_column(String(40))
    precondition: Mapped[str | None] = mapped_column(String(80))
    action: Mapped[str | None] = mapped_column(String(80))
    position: Mapped[int] = mapped_column(Integer, default=0)

    template = relationship("WorkflowTemplate", back_populates="steps")


# ---------------------------------------------------------------------------
# Workflow runs
# ---------------------------------------------------------------------------


class WorkflowRun(Base):
    __tablename__ = "workflow_runs"
    __table_args__ = (
        Index("ix_workflow_runs_obligation_instance_id", "obligation_instance_id"),
        Index("ix_workflow_runs_entity_id", "entity_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    template_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("workflow_templates.id"), nullable=False
    )
    obligation_instance_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("obligation_instances.id"), nullable=False
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entities.id"), nullable=False
    )
    status: Mapped[WorkflowRunStatus] = mapped_column(
        Enum(WorkflowRunStatus), default=WorkflowRunStatus.active
    )
    started_by: Mapped[str | None] = mapped_column(String(80))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    template = relationship("WorkflowTemplate")
    steps = relationship(
        "WorkflowStepRun", back_populates="run", order_by="WorkflowStepRun.position"
    )


class WorkflowStepRun(Base):
    __tablename__ = "workflow_step_runs"
    __table_args__ = (
        UniqueConstraint("run_id", "step_key", name="uq_workflow_step_runs_run_key"),
        Index("ix_workflow_step_runs_status", "status"),
        Index("ix_workflow_step_runs_assignee_id", "assignee_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("workflow_runs.id"), nullable=False
    )
    step_key: Mapped[str] = mapped_column(String(80), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    step_type: Mapped[StepType] = mapped_column(Enum(StepType), nullable=False)
    status: Mapped[StepStatus] = mapped_column(
        Enum(StepStatus), default=StepStatus.blocked
    )
    priority: Mapped[PriorityLevel] = mapped_column(
        Enum(PriorityLevel), default=PriorityLevel.medium
    )
    sla_days: Mapped[int] = mapped_column(Integer, default=2)
    queue_name: Mapped[str | None] = mapped_column(String(40))
    required_documents: Mapped[list] = mapped_column(JSON, default=list)
    precondition: Mapped[str | None] = mapped_column(String(80))
    action: Mapped[str | None] = mapped_column(String(80))
    position: Mapped[int] = mapped_column(Integer, default=0)
    assignee_id: Mapped[str | None] = mapped_column(String(80))
    ready_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sla_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_by: Mapped[str | None] = mapped_column(String(80))
    stall_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reopened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    run = relationship("WorkflowRun", back_populates="steps")


class WorkflowStepTransition(Base):
    __tablename__ = "workflow_step_transitions"
    __table_args__ = (Index("ix_workflow_step_transitions_run_id", "run_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("workflow_runs.id"), nullable=False
    )
    step_run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("workflow_step_runs.id"), nullable=False
    )
    from_status: Mapped[StepStatus | None] = mapped_column(Enum(StepStatus))
    to_status: Mapped[StepStatus] = mapped_column(Enum(StepStatus), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(80))
    note: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


# ---------------------------------------------------------------------------
# Work queues
# ---------------------------------------------------------------------------


class QueueMember(Base):
    __tablename__ = "queue_members"
    __table_args__ = (
        UniqueConstraint("queue_name", "actor_id", name="uq_queue_members_queue_actor"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    queue_name: Mapped[str] = mapped_column(String(40), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(80), nullable=False)
    max_load: Mapped[int | None] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class QueueItem(Base):
    __tablename__ = "queue_items"
    __table_args__ = (
        Index("ix_queue_items_queue_status", "queue_name", "status"),
        Index("ix_queue_items_assignee_id", "assignee_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    queue_name: Mapped[str] = mapped_column(String(40), nullable=False)
    step_run_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("workflow_step_runs.id")
    )
    title: Mapped[str | None] = mapped_column(String(200))
    priority: Mapped[PriorityLevel] = mapped_column(
        Enum(PriorityLevel), default=PriorityLevel.medium
    )
    sla_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    entered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    status: Mapped[QueueItemStatus] = mapped_column(
        Enum(QueueItemStatus), default=QueueItemStatus.waiting
    )
    assignee_id: Mapped[str | None] = mapped_column(String(80))
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    step_run = relationship("WorkflowStepRun")
