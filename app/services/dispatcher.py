"""Notification routing and delivery bookkeeping.

``route`` is pure: an event, an immutable preference snapshot and a clock go
in, a :class:`DispatchDecision` comes out. Everything that touches the
database lives in the functions below it.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

from fastapi import HTTPException
from sqlalchemy import and_, exists, select
from sqlalchemy.orm import Session, aliased

from app.config import settings
from app.models.compliance import Entity
from app.models.notification import (
    Channel,
    DeliveryStatus,
    NotificationAcknowledgement,
    NotificationDelivery,
    NotificationEvent,
    Severity,
)
from app.observability import NOTIFICATION_DELIVERIES
from app.schemas.notification import SendRequest
from app.schemas.preferences import AlertPreferenceSnapshot, DigestMode
from app.services.common import coerce_uuid, ensure_utc
from app.services.event import EventType, publish_event
from app.services.preferences import snapshot_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityContact:
    email: str | None = None
    phone: str | None = None
    timezone: str | None = None


@dataclass(frozen=True)
class ChannelDecision:
    channel: Channel | None
    status: DeliveryStatus
    reason: str | None = None
    recipients: tuple[str, ...] = ()
    scheduled_for: datetime | None = None
    digest_key: str | None = None


@dataclass(frozen=True)
class DispatchDecision:
    channels: tuple[ChannelDecision, ...] = field(default_factory=tuple)
    is_escalation: bool = False

    @property
    def sendable(self) -> tuple[ChannelDecision, ...]:
        return tuple(c for c in self.channels if c.status == DeliveryStatus.pending)

    @property
    def deferred_until(self) -> datetime | None:
        for decision in self.channels:
            if decision.status == DeliveryStatus.deferred:
                return decision.scheduled_for
        return None


# ---------------------------------------------------------------------------
# Pure routing
# ---------------------------------------------------------------------------


def _zone(prefs: AlertPreferenceSnapshot, contact: EntityContact | None) -> ZoneInfo:
    name = prefs.quiet_hours.timezone or (contact.timezone if contact else None)
    return ZoneInfo(name or settings.default_timezone)


def in_quiet_hours(local: time, start: time, end: time) -> bool:
    """``[start, end)`` with wraparound past midnight. An empty window never matches."""
    if start == end:
        return False
    if start < end:
        return start <= local < end
    return local >= start or local < end


def quiet_hours_end(now: datetime, end: time, zone: ZoneInfo) -> datetime:
    local = ensure_utc(now).astimezone(zone)
    candidate = datetime.combine(local.date(), end, tzinfo=zone)
    if candidate <= local:
        candidate = datetime.combine(local.date() + timedelta(days=1), end, tzinfo=zone)
    return candidate.astimezone(ZoneInfo("UTC"))


def digest_window(
    mode: DigestMode, now: datetime, zone: ZoneInfo
) -> tuple[str, datetime]:
    """Digest key and the instant its window closes."""
    local_date = ensure_utc(now).astimezone(zone).date()
    if mode == DigestMode.weekly:
        year, week, weekday = local_date.isocalendar()
        closes = local_date + timedelta(days=8 - weekday)
        key = f"weekly:{year}-W{week:02d}"
    else:
        closes = local_date + timedelta(days=1)
        key = f"daily:{local_date.isoformat()}"
    close_at = datetime.combine(closes, time(0, 0), tzinfo=zone)
    return key, close_at.astimezone(ZoneInfo("UTC"))


def _recipients(
    channel: Channel,
    prefs: AlertPreferenceSnapshot,
    entity_id,
    contact: EntityContact | None,
) -> tuple[str, ...]:
    channels = prefs.channels
    if channel == Channel.email:
        found = [channels.email.primary_email, channels.email.secondary_email]
        if not any(found) and contact:
            found = [contact.email]
    elif channel == Channel.sms:
        found = [channels.sms.phone_number or (contact.phone if contact else None)]
    elif channel == Channel.whatsapp:
        found = [channels.whatsapp.phone_number or (contact.phone if contact else None)]
    elif channel == Channel.in_app:
        found = [str(entity_id)]
    else:
        found = list(channels.push.device_tokens)
    return tuple(r for r in found if r)


def _suppress_all(reason: str) -> DispatchDecision:
    return DispatchDecision(
        channels=tuple(
            ChannelDecision(channel=c, status=DeliveryStatus.suppressed, reason=reason)
            for c in Channel
        )
    )


def route(
    event,
    prefs: AlertPreferenceSnapshot,
    now: datetime,
    primary_contact: EntityContact | None = None,
) -> DispatchDecision:
    severity = Severity(event.severity)

    if not prefs.notifications_enabled:
        return _suppress_all("disabled")

    severity_pref = prefs.severities.for_severity(severity)
    if not severity_pref.enabled:
        return _suppress_all("severity_disabled")
    if event.domain is not None and not prefs.domains.for_domain(event.domain).enabled:
        return _suppress_all("domain_disabled")

    if event.is_escalation:
        target = prefs.escalation.escalate_to or (
            primary_contact.email if primary_contact else None
        )
        if not target:
            return DispatchDecision(
                channels=(
                    ChannelDecision(
                        channel=Channel.email,
                        status=DeliveryStatus.suppressed,
                        reason="no_recipient",
                    ),
                ),
                is_escalation=True,
            )
        return DispatchDecision(
            channels=(
                ChannelDecision(
                    channel=Channel.email,
                    status=DeliveryStatus.pending,
                    recipients=(target,),
                ),
            ),
            is_escalation=True,
        )

    zone = _zone(prefs, primary_contact)
    quiet = prefs.quiet_hours
    if quiet.enabled and not (severity == Severity.critical and quiet.except_critical):
        local = ensure_utc(now).astimezone(zone).time()
        if in_quiet_hours(local, quiet.start_time, quiet.end_time):
            return DispatchDecision(
                channels=(
                    ChannelDecision(
                        channel=None,
                        status=DeliveryStatus.deferred,
                        reason="quiet_hours",
                        scheduled_for=quiet_hours_end(now, quiet.end_time, zone),
                    ),
                )
            )

    decisions = []
    for channel in severity_pref.channels:
        channel_pref = prefs.channels.for_channel(channel)
        if not channel_pref.enabled:
            decisions.append(
                ChannelDecision(
                    channel=channel,
                    status=DeliveryStatus.suppressed,
                    reason="channel_disabled",
                )
            )
            continue
        if (
            channel == Channel.sms
            and channel_pref.only_critical
            and severity != Severity.critical
        ):
            decisions.append(
                ChannelDecision(
                    channel=channel,
                    status=DeliveryStatus.suppressed,
                    reason="sms_only_critical",
                )
            )
            continue
        recipients = _recipients(channel, prefs, event.entity_id, primary_contact)
        if not recipients:
            decisions.append(
                ChannelDecision(
                    channel=channel,
                    status=DeliveryStatus.suppressed,
                    reason="no_recipient",
                )
            )
            continue
        if (
            not severity_pref.send_immediately
            and channel == Channel.email
            and channel_pref.digest_mode != DigestMode.immediate
        ):
            key, closes = digest_window(channel_pref.digest_mode, now, zone)
            decisions.append(
                ChannelDecision(
                    channel=channel,
                    status=DeliveryStatus.batched,
                    recipients=recipients,
                    scheduled_for=closes,
                    digest_key=key,
                )
            )
            continue
        decisions.append(
            ChannelDecision(
                channel=channel, status=DeliveryStatus.pending, recipients=recipients
            )
        )
    return DispatchDecision(channels=tuple(decisions))


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def contact_for(entity: Entity | None) -> EntityContact | None:
    if entity is None:
        return None
    return EntityContact(
        email=entity.primary_contact_email,
        phone=entity.primary_contact_phone,
        timezone=entity.timezone,
    )


def send_request_for(delivery: NotificationDelivery) -> SendRequest:
    event = delivery.event
    payload = dict(event.payload or {})
    payload.update(
        {
            "title": event.title,
            "body": event.body,
            "severity": event.severity.value,
            "domain": event.domain.value if event.domain else None,
            "event_type": event.event_type,
            "brand": settings.brand_name,
        }
    )
    return SendRequest(
        delivery_id=delivery.id,
        event_id=event.id,
        entity_id=delivery.entity_id,
        channel=delivery.channel.value,
        recipients=tuple(delivery.recipients or ()),
        template=delivery.template or event.event_type,
        payload=payload,
        is_escalation=delivery.is_escalation,
        digest_key=delivery.digest_key,
    )


def mark_sent(delivery: NotificationDelivery, now: datetime, reason: str | None = None) -> None:
    delivery.status = DeliveryStatus.sent
    delivery.delivered_at = ensure_utc(now)
    if reason:
        delivery.reason = reason
    NOTIFICATION_DELIVERIES.labels(
        delivery.channel.value if delivery.channel else "none", "sent"
    ).inc()


def record_failure(
    delivery: NotificationDelivery, error: str, now: datetime, final: bool
) -> None:
    delivery.last_error = error[:2000]
    delivery.last_attempt_at = ensure_utc(now)
    if final:
        delivery.status = DeliveryStatus.failed
        delivery.reason = "max_retries_exceeded"
        NOTIFICATION_DELIVERIES.labels(delivery.channel.value, "failed").inc()


def _apply(
    db: Session,
    event: NotificationEvent,
    decision: ChannelDecision,
    now: datetime,
    delivery: NotificationDelivery | None = None,
) -> NotificationDelivery:
    if delivery is None:
        delivery = NotificationDelivery(event_id=event.id, entity_id=event.entity_id)
        db.add(delivery)
        event.deliveries.append(delivery)
    delivery.channel = decision.channel
    delivery.status = decision.status
    delivery.reason = decision.reason
    delivery.recipients = list(decision.recipients)
    delivery.template = event.event_type
    delivery.scheduled_for = decision.scheduled_for
    delivery.digest_key = decision.digest_key
    delivery.is_escalation = event.is_escalation

    if decision.status == DeliveryStatus.pending and decision.channel == Channel.in_app:
        mark_sent(delivery, now)
    elif decision.status != DeliveryStatus.pending:
        NOTIFICATION_DELIVERIES.labels(
            decision.channel.value if decision.channel else "none",
            decision.status.value,
        ).inc()
    return delivery


def _route_event(db: Session, event: NotificationEvent, now: datetime) -> DispatchDecision:
    prefs = snapshot_for(db, event.entity_id)
    entity = db.get(Entity, event.entity_id)
    return route(event, prefs, now, primary_contact=contact_for(entity))


def dispatch(db: Session, event_id, now: datetime) -> list[SendRequest]:
    """Route an event and persist one delivery row per channel outcome. No commit.

    Idempotent: an event that already has deliveries is not routed again.
    """
    event = db.get(NotificationEvent, coerce_uuid(event_id))
    if event is None:
        logger.warning("Dispatch skipped: event %s not found", event_id)
        return []
    if event.deliveries:
        logger.info("Event %s already dispatched", event.id)
        return []

    decision = _route_event(db, event, now)
    deliveries = [_apply(db, event, c, now) for c in decision.channels]
    db.flush()

    requests = [
        send_request_for(d)
        for d in deliveries
        if d.status == DeliveryStatus.pending
    ]
    logger.info(
        "Dispatched %s: %d send request(s)",
        event.event_type,
        len(requests),
        extra={
            "event_id": str(event.id),
            "outcomes": {
                (d.channel.value if d.channel else "event"): d.status.value
                for d in deliveries
            },
        },
    )
    return requests


def release_deferred(db: Session, now: datetime) -> list[SendRequest]:
    """Re-route events whose quiet-hours deferral has ended. No commit."""
    now = ensure_utc(now)
    rows = db.scalars(
        select(NotificationDelivery)
        .where(
            NotificationDelivery.status == DeliveryStatus.deferred,
            NotificationDelivery.scheduled_for <= now,
        )
        .order_by(NotificationDelivery.scheduled_for, NotificationDelivery.id)
    ).all()
    requests: list[SendRequest] = []
    for deferred in rows:
        event = deferred.event
        decision = _route_event(db, event, now)
        if decision.deferred_until is not None:
            deferred.scheduled_for = decision.deferred_until
            continue
        channels = list(decision.channels)
        if not channels:
            deferred.status = DeliveryStatus.suppressed
            deferred.reason = "no_channels"
            continue
        deliveries = [_apply(db, event, channels[0], now, delivery=deferred)]
        deliveries.extend(_apply(db, event, c, now) for c in channels[1:])
        db.flush()
        requests.extend(
            send_request_for(d) for d in deliveries if d.status == DeliveryStatus.pending
        )
        logger.info("Released deferred event %s", event.id)
    db.flush()
    return requests


def flush_digests(db: Session, now: datetime) -> list[SendRequest]:
    """Send one digest per (entity, channel, key) whose window has closed. No commit."""
    now = ensure_utc(now)
    rows = db.scalars(
        select(NotificationDelivery)
        .where(
            NotificationDelivery.status == DeliveryStatus.batched,
            NotificationDelivery.scheduled_for <= now,
        )
        .order_by(NotificationDelivery.created_at, NotificationDelivery.id)
    ).all()
    groups: dict[tuple, list[NotificationDelivery]] = {}
    for row in rows:
        groups.setdefault((row.entity_id, row.channel, row.digest_key), []).append(row)

    requests: list[SendRequest] = []
    for (entity_id, channel, digest_key), batched in groups.items():
        events = [row.event for row in batched]
        lines = [f"- {e.title}" for e in events]
        digest = publish_event(
            db,
            EventType.digest,
            entity_id=entity_id,
            severity=Severity.info,
            title=f"{len(events)} compliance update(s)",
            body="\n".join(lines),
            payload={
                "digest_key": digest_key,
                "event_ids": [str(e.id) for e in events],
            },
            dedup_key=f"digest:{entity_id}:{channel.value}:{digest_key}",
        )
        if digest is None:
            continue
        delivery = NotificationDelivery(
            event_id=digest.id,
            entity_id=entity_id,
            channel=channel,
            status=DeliveryStatus.pending,
            recipients=list(batched[-1].recipients or ()),
            template=EventType.digest.value,
            digest_key=digest_key,
        )
        db.add(delivery)
        digest.deliveries.append(delivery)
        for row in batched:
            row.status = DeliveryStatus.sent
            row.reason = "digest"
            row.delivered_at = now
        db.flush()
        requests.append(send_request_for(delivery))
        logger.info(
            "Flushed %s digest for entity %s with %d item(s)",
            digest_key,
            entity_id,
            len(batched),
        )
    return requests


def due_escalations(db: Session, now: datetime) -> list[NotificationEvent]:
    """Publish one escalation per unacknowledged event past its timeout. No commit."""
    now = ensure_utc(now)
    child = aliased(NotificationEvent)
    candidates = db.scalars(
        select(NotificationEvent)
        .where(
            NotificationEvent.is_escalation.is_(False),
            NotificationEvent.event_type != EventType.digest.value,
            exists().where(
                and_(
                    NotificationDelivery.event_id == NotificationEvent.id,
                    NotificationDelivery.status == DeliveryStatus.sent,
                )
            ),
            ~exists().where(NotificationAcknowledgement.event_id == NotificationEvent.id),
            ~exists().where(child.parent_event_id == NotificationEvent.id),
        )
        .order_by(NotificationEvent.created_at, NotificationEvent.id)
    ).all()

    escalated: list[NotificationEvent] = []
    for event in candidates:
        prefs = snapshot_for(db, event.entity_id)
        if not prefs.escalation.enabled:
            continue
        sent_at = min(
            (
                ensure_utc(d.delivered_at)
                for d in event.deliveries
                if d.status == DeliveryStatus.sent and d.delivered_at is not None
            ),
            default=None,
        )
        if sent_at is None:
            continue
        if now - sent_at < timedelta(hours=prefs.escalation.escalate_after_hours):
            continue
        escalation = publish_event(
            db,
            EventType.escalation,
            entity_id=event.entity_id,
            severity=Severity.critical,
            title=f"Unacknowledged: {event.title}",
            body=(
                f"{event.body}\n\nThis alert has not been acknowledged for "
                f"{prefs.escalation.escalate_after_hours} hour(s)."
            ),
            domain=event.domain,
            obligation_instance_id=event.obligation_instance_id,
            workflow_run_id=event.workflow_run_id,
            payload={"parent_event_type": event.event_type},
            dedup_key=f"escalation:{event.id}",
            is_escalation=True,
            parent_event_id=event.id,
        )
        if escalation is not None:
            escalated.append(escalation)
    db.flush()
    return escalated


def reconcile_candidates(db: Session, now: datetime) -> list[uuid.UUID]:
    """Events older than the grace period that never got a delivery row."""
    cutoff = ensure_utc(now) - timedelta(minutes=settings.dispatch_reconcile_after_minutes)
    return list(
        db.scalars(
            select(NotificationEvent.id)
            .where(
                NotificationEvent.created_at <= cutoff,
                ~exists().where(NotificationDelivery.event_id == NotificationEvent.id),
            )
            .order_by(NotificationEvent.created_at)
        )
    )


def stale_pending_deliveries(db: Session, now: datetime) -> list[uuid.UUID]:
    """Pending deliveries never attempted within the grace period."""
    cutoff = ensure_utc(now) - timedelta(minutes=settings.dispatch_reconcile_after_minutes)
    return list(
        db.scalars(
            select(NotificationDelivery.id).where(
                NotificationDelivery.status == DeliveryStatus.pending,
                NotificationDelivery.attempts == 0,
                NotificationDelivery.created_at <= cutoff,
            )
        )
    )


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


def get_event(db: Session, event_id) -> NotificationEvent:
    event = db.get(NotificationEvent, coerce_uuid(event_id))
    if not event:
        raise HTTPException(status_code=404, detail="Alert not found")
    return event


def acknowledge(db: Session, event_id, actor_id: str | None) -> NotificationAcknowledgement:
    """Append an acknowledgement; acknowledging twice returns the first. No commit."""
    event = get_event(db, event_id)
    if event.acknowledgement is not None:
        return event.acknowledgement
    ack = NotificationAcknowledgement(event_id=event.id, actor_id=actor_id)
    db.add(ack)
    event.acknowledgement = ack
    db.flush()
    logger.info("Alert %s acknowledged by %s", event.id, actor_id)
    return ack


def list_alerts(db: Session, entity_id, limit: int = 50) -> list[NotificationEvent]:
    return list(
        db.scalars(
            select(NotificationEvent)
            .where(NotificationEvent.entity_id == coerce_uuid(entity_id))
            .order_by(NotificationEvent.created_at.desc(), NotificationEvent.id)
            .limit(limit)
        )
    )


def alert_view(event: NotificationEvent) -> dict:
    return {
        "id": event.id,
        "entity_id": event.entity_id,
        "event_type": event.event_type,
        "severity": event.severity,
        "domain": event.domain,
        "obligation_instance_id": event.obligation_instance_id,
        "workflow_run_id": event.workflow_run_id,
        "title": event.title,
        "body": event.body,
        "payload": event.payload,
        "is_escalation": event.is_escalation,
        "parent_event_id": event.parent_event_id,
        "acknowledged": event.acknowledgement is not None,
        "deliveries": list(event.deliveries),
        "created_at": event.created_at,
    }
