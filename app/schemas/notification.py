from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.compliance import Domain
from app.models.notification import Channel, DeliveryStatus, Severity


class NotificationDeliveryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    channel: Channel | None = None
    status: DeliveryStatus
    reason: str | None = None
    scheduled_for: datetime | None = None
    digest_key: str | None = None
    attempts: int
    delivered_at: datetime | None = None
    last_error: str | None = None


class NotificationEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_id: UUID
    event_type: str
    severity: Severity
    domain: Domain | None = None
    obligation_instance_id: UUID | None = None
    workflow_run_id: UUID | None = None
    title: str
    body: str
    payload: dict | None = None
    is_escalation: bool
    parent_event_id: UUID | None = None
    acknowledged: bool = False
    deliveries: list[NotificationDeliveryRead] = Field(default_factory=list)
    created_at: datetime


class AcknowledgeRequest(BaseModel):
    actor_id: str | None = None


class SendRequest(BaseModel):
    """One outbound message for one channel, handed to the channel gateway."""

    model_config = ConfigDict(frozen=True)

    delivery_id: UUID
    event_id: UUID
    entity_id: UUID
    channel: str
    recipients: tuple[str, ...]
    template: str
    payload: dict
    is_escalation: bool = False
    digest_key: str | None = None


class SchedulerTickRequest(BaseModel):
    as_of: datetime | None = None


class SchedulerTickResponse(BaseModel):
    as_of: datetime
    instances_created: int
    entities_processed: int
    entities_requeued: int
