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
from app.models.compliance import ComplianceState, Domain


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Severity(enum.Enum):
    critical = "critical"
    warning = "warning"
    info = "info"

    @classmethod
    def for_state(cls, state: ComplianceState) -> "Severity":
        return {
            ComplianceState.RED: cls.critical,
            ComplianceState.AMBER: cls.warning,
            ComplianceState.GREEN: cls.info,
        }[state]


class Channel(enum.Enum):
    email = "email"
    sms = "sms"
    whatsapp = "whatsapp"
    in_app = "in_app"
    push = "push"


class DeliveryStatus(enum.Enum):
    pending = "pending"
    sent = "sent"
    batched = "batched"
    deferred = "deferred"
    suppressed = "suppressed"
    failed = "failed"


# ---------------------------------------------------------------------------
# Alert preferences
# ---------------------------------------------------------------------------


class AlertPreference(Base):
    __tablename__ = "alert_preferences"
    __table_args__ = (
        UniqueConstraint("entity_id", "contact_id", name="uq_alert_preferences_entity_contact"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entities.id"), nullable=False
    )
    contact_id: Mapped[str | None] = mapped_column(String(80))
    preferences: Mapped[dict] = mapped_column(JSON, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1)
    updated_by: Mapped[str | None] = mapped_column(String(80))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


# ---------------------------------------------------------------------------
# Notification events (immutable)
# ---------------------------------------------------------------------------


class NotificationEvent(Base):
    __tablename__ = "notification_events"
    __table_args__ = (
        UniqueConstraint("dedup_key", name="uq_notification_events_dedup_key"),
        Index("ix_notification_events_entity_id", "entity_id"),
        Index("ix_notification_events_created_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entities.id"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(80), nullable=False)
    severity: Mapped[Severity] = mapped_column(Enum(Severity), nullable=False)
    domain: Mapped[Domain | None] = mapped_column(Enum(Domain))
    obligation_instance_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    workflow_run_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON)
    is_escalation: Mapped[bool] = mapped_column(Boolean, default=False)
    parent_event_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("notification_events.id")
    )
    dedup_key: Mapped[str | None] = mapped_column(String(160))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    deliveries = relationship("NotificationDelivery", back_populates="event")
    acknowledgement = relationship(
        "NotificationAcknowledgement", back_populates="event", uselist=False
    )


class NotificationAcknowledgement(Base):
    __tablename__ = "notification_acknowledgements"
    __table_args__ = (
        UniqueConstraint("event_id", name="uq_notification_acknowledgements_event"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("notification_events.id"), nullable=False
    )
    actor_id: Mapped[str | None] = mapped_column(String(80))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    event = relationship("NotificationEvent", back_populates="acknowledgement")


class NotificationDelivery(Base):
    __tablename__ = "notification_deliveries"
    __table_args__ = (
        Index("ix_notification_deliveries_event_id", "event_id"),
        Index("ix_notification_deliveries_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("notification_events.id"), nullable=False
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entities.id"), nullable=False
    )
    channel: Mapped[Channel | None] = mapped_column(Enum(Channel))
    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus), default=DeliveryStatus.pending
    )
    reason: Mapped[str | None] = mapped_column(String(80))
    recipients: Mapped[list] = mapped_column(JSON, default=list)
    template: Mapped[str | None] = mapped_column(String(80))
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    digest_key: Mapped[str | None] = mapped_column(String(40))
    is_escalation: Mapped[bool] = mapped_column(Boolean, default=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    event = relationship("NotificationEvent", back_populates="deliveries")
