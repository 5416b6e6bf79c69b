import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Domain(enum.Enum):
    CORPORATE = "CORPORATE"
    TAX_GST = "TAX_GST"
    TAX_INCOME = "TAX_INCOME"
    LABOUR = "LABOUR"
    FEMA = "FEMA"
    LICENSES = "LICENSES"


# Highest priority first; used to break ties between equal due dates.
DOMAIN_PRIORITY: tuple[Domain, ...] = (
    Domain.TAX_GST,
    Domain.TAX_INCOME,
    Domain.CORPORATE,
    Domain.LABOUR,
    Domain.FEMA,
    Domain.LICENSES,
)


class Periodicity(enum.Enum):
    one_time = "one_time"
    monthly = "monthly"
    quarterly = "quarterly"
    half_yearly = "half_yearly"
    annual = "annual"


class ObligationStatus(enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    overdue = "overdue"
    cancelled = "cancelled"


OPEN_OBLIGATION_STATUSES = (
    ObligationStatus.pending,
    ObligationStatus.in_progress,
    ObligationStatus.overdue,
)


class LifecycleStage(enum.Enum):
    onboarding = "onboarding"
    active = "active"
    dormant = "dormant"
    winding_up = "winding_up"


class ComplianceState(enum.Enum):
    GREEN = "GREEN"
    AMBER = "AMBER"
    RED = "RED"

    @property
    def rank(self) -> int:
        return {"GREEN": 0, "AMBER": 1, "RED": 2}[self.value]


class PriorityLevel(enum.Enum):
    critical = "critical"
    urgent = "urgent"
    high = "high"
    medium = "medium"
    low = "low"

    @property
    def rank(self) -> int:
        return {"critical": 5, "urgent": 4, "high": 3, "medium": 2, "low": 1}[
            self.value
        ]


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


class Entity(Base):
    __tablename__ = "entities"
    __table_args__ = (Index("ix_entities_entity_type", "entity_type"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(40), nullable=False)
    registration_number: Mapped[str | None] = mapped_column(String(80))
    registration_metadata: Mapped[dict | None] = mapped_column(JSON)
    lifecycle_stage: Mapped[LifecycleStage] = mapped_column(
        Enum(LifecycleStage), default=LifecycleStage.onboarding
    )
    timezone: Mapped[str | None] = mapped_column(String(64))
    primary_contact_email: Mapped[str | None] = mapped_column(String(255))
    primary_contact_phone: Mapped[str | None] = mapped_column(String(40))
    onboarded_on: Mapped[date | None] = mapped_column(Date)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    instances = relationship("ObligationInstance", back_populates="entity")


# ---------------------------------------------------------------------------
# Obligation definitions
# ---------------------------------------------------------------------------


class ObligationDefinition(Base):
    __tablename__ = "obligation_definitions"
    __table_args__ = (
        UniqueConstraint("code", "version", name="uq_obligation_definitions_code_version"),
        Index("ix_obligation_definitions_domain", "domain"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    code: Mapped[str] = mapped_column(String(80), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    domain: Mapped[Domain] = mapped_column(Enum(Domain), nullable=False)
    periodicity: Mapped[Periodicity] = mapped_column(Enum(Periodicity), nullable=False)
    base_sla_days: Mapped[int] = mapped_column(Integer, default=5)
    due_offset_days: Mapped[int] = mapped_column(Integer, default=0)
    penalty_formula: Mapped[dict | None] = mapped_column(JSON)
    priority: Mapped[PriorityLevel] = mapped_column(
        Enum(PriorityLevel), default=PriorityLevel.medium
    )
    risk_window_days: Mapped[int | None] = mapped_column(Integer)
    applicable_entity_types: Mapped[list] = mapped_column(JSON, default=list)
    effective_from: Mapped[date | None] = mapped_column(Date)
    effective_until: Mapped[date | None] = mapped_column(Date)
    supersedes_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("obligation_definitions.id")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


# ---------------------------------------------------------------------------
# Obligation instances
# ---------------------------------------------------------------------------


class ObligationInstance(Base):
    __tablename__ = "obligation_instances"
    __table_args__ = (
        UniqueConstraint(
            "entity_id",
            "obligation_code",
            "period_key",
            name="uq_obligation_instances_entity_code_period",
        ),
        Index("ix_obligation_instances_entity_id", "entity_id"),
        Index("ix_obligation_instances_status", "status"),
        Index("ix_obligation_instances_due_date", "due_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entities.id"), nullable=False
    )
    # No FK constraint: a definition may be removed out-of-band, and the
    # aggregator must be able to report the dangling reference.
    definition_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    obligation_code: Mapped[str] = mapped_column(String(80), nullable=False)
    period_key: Mapped[str] = mapped_column(String(40), nullable=False)
    period_label: Mapped[str] = mapped_column(String(40), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[ObligationStatus] = mapped_column(
        Enum(ObligationStatus), default=ObligationStatus.pending
    )
    workflow_run_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    penalty_accrued: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    entity = relationship("Entity", back_populates="instances")
    definition = relationship(
        "ObligationDefinition",
        primaryjoin="ObligationInstance.definition_id == ObligationDefinition.id",
        foreign_keys=[definition_id],
        viewonly=True,
    )
    transitions = relationship(
        "ObligationStatusTransition",
        back_populates="instance",
        order_by="ObligationStatusTransition.created_at",
    )
    documents = relationship("ObligationDocument", back_populates="instance")


class ObligationStatusTransition(Base):
    __tablename__ = "obligation_status_transitions"
    __table_args__ = (Index("ix_obligation_status_transitions_instance_id", "instance_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    instance_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("obligation_instances.id"), nullable=False
    )
    from_status: Mapped[ObligationStatus | None] = mapped_column(Enum(ObligationStatus))
    to_status: Mapped[ObligationStatus] = mapped_column(
        Enum(ObligationStatus), nullable=False
    )
    actor_id: Mapped[str | None] = mapped_column(String(80))
    reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    instance = relationship("ObligationInstance", back_populates="transitions")


class ObligationDocument(Base):
    __tablename__ = "obligation_documents"
    __table_args__ = (
        UniqueConstraint(
            "instance_id",
            "external_document_id",
            name="uq_obligation_documents_instance_external",
        ),
        Index("ix_obligation_documents_instance_id", "instance_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    instance_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("obligation_instances.id"), nullable=False
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entities.id"), nullable=False
    )
    document_type: Mapped[str] = mapped_column(String(80), nullable=False)
    external_document_id: Mapped[str | None] = mapped_column(String(120))
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    instance = relationship("ObligationInstance", back_populates="documents")


class ReminderLog(Base):
    __tablename__ = "reminder_logs"
    __table_args__ = (
        UniqueConstraint("instance_id", "offset_days", name="uq_reminder_logs_instance_offset"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    instance_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("obligation_instances.id"), nullable=False
    )
    offset_days: Mapped[int] = mapped_column(Integer, nullable=False)
    reminder_date: Mapped[date] = mapped_column(Date, nullable=False)
    event_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


# ---------------------------------------------------------------------------
# Computed state
# ---------------------------------------------------------------------------


class ComplianceStateSnapshot(Base):
    __tablename__ = "compliance_state_snapshots"

    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entities.id"), primary_key=True
    )
    overall_state: Mapped[ComplianceState] = mapped_column(
        Enum(ComplianceState), nullable=False
    )
    risk_score: Mapped[int] = mapped_column(Integer, default=0)
    penalty_exposure: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    state_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class ComplianceStateHistory(Base):
    __tablename__ = "compliance_state_history"
    __table_args__ = (Index("ix_compliance_state_history_entity_id", "entity_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entities.id"), nullable=False
    )
    previous_state: Mapped[ComplianceState | None] = mapped_column(Enum(ComplianceState))
    overall_state: Mapped[ComplianceState] = mapped_column(
        Enum(ComplianceState), nullable=False
    )
    risk_score: Mapped[int] = mapped_column(Integer, default=0)
    penalty_exposure: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
