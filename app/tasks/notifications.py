import logging

from app.celery_app import celery_app
from app.config import settings

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.tasks.notifications.dispatch_notification_event", ignore_result=True
)
def dispatch_notification_event(event_id: str) -> None:
    """Route one notification event and queue a delivery per send-request."""
    from app.db import SessionLocal

    db = SessionLocal()
    try:
        _dispatch(db, event_id)
    except Exception as e:
        db.rollback()
        logger.exception("Failed to dispatch notification event %s: %s", event_id, e)
    finally:
        db.close()


def _dispatch(db, event_id: str) -> list[str]:
    from app.services import dispatcher
    from app.services.common import utcnow

    requests = dispatcher.dispatch(db, event_id, utcnow())
    db.commit()
    return _queue_deliveries(requests)


def _queue_deliveries(requests) -> list[str]:
    delivery_ids = [str(r.delivery_id) for r in requests]
    for delivery_id in delivery_ids:
        try:
            deliver_send_request.delay(delivery_id)
        except Exception as e:
            logger.exception("Failed to queue delivery %s: %s", delivery_id, e)
    return delivery_ids


@celery_app.task(
    name="app.tasks.notifications.deliver_send_request",
    ignore_result=True,
    bind=True,
    max_retries=settings.dispatch_max_retries,
    default_retry_delay=settings.dispatch_retry_base_seconds,
)
def deliver_send_request(self, delivery_id: str) -> None:
    """Hand one delivery to the channel gateway, retrying with backoff."""
    from app.db import SessionLocal

    retries = self.request.retries or 0
    db = SessionLocal()
    try:
        needs_retry = _attempt_delivery(
            db, delivery_id, final=retries >= self.max_retries
        )
        if needs_retry:
            try:
                self.retry(
                    countdown=settings.dispatch_retry_base_seconds * (2**retries)
                )
            except self.MaxRetriesExceededError:
                _give_up(db, delivery_id)
    finally:
        db.close()


def _attempt_delivery(db, delivery_id: str, final: bool = False) -> bool:
    """Send once. Returns True when the attempt failed and should be retried."""
    from app.models.notification import DeliveryStatus, NotificationDelivery
    from app.services.channels import ChannelDeliveryError, send_channel_message
    from app.services.common import coerce_uuid, utcnow
    from app.services.dispatcher import mark_sent, record_failure, send_request_for

    delivery = db.get(NotificationDelivery, coerce_uuid(delivery_id))
    if not delivery:
        logger.error("NotificationDelivery %s not found", delivery_id)
        return False
    if delivery.status != DeliveryStatus.pending:
        logger.info("Delivery %s is %s; not sending", delivery_id, delivery.status.value)
        return False

    request = send_request_for(delivery)
    now = utcnow()
    delivery.attempts = (delivery.attempts or 0) + 1
    delivery.last_attempt_at = now
    try:
        send_channel_message(
            request.channel, list(request.recipients), request.template, request.payload
        )
    except ChannelDeliveryError as e:
        logger.warning(
            "Delivery %s attempt %d failed: %s", delivery_id, delivery.attempts, e
        )
        record_failure(delivery, str(e), now, final=final)
        db.commit()
        if final:
            logger.error("Delivery %s exhausted retries", delivery_id)
        return not final

    mark_sent(delivery, now)
    db.commit()
    return False


def _give_up(db, delivery_id: str) -> None:
    from app.models.notification import NotificationDelivery
    from app.services.common import coerce_uuid, utcnow
    from app.services.dispatcher import record_failure

    delivery = db.get(NotificationDelivery, coerce_uuid(delivery_id))
    if delivery is None:
        return
    record_failure(delivery, delivery.last_error or "retries exhausted", utcnow(), final=True)
    db.commit()
    logger.error("Delivery %s exhausted retries", delivery_id)


@celery_app.task(name="app.tasks.notifications.release_deferred", ignore_result=True)
def release_deferred() -> None:
    """Re-route events whose quiet-hours window has ended."""
    from app.db import SessionLocal

    db = SessionLocal()
    try:
        _release_deferred(db)
    except Exception as e:
        db.rollback()
        logger.exception("Failed to release deferred notifications: %s", e)
    finally:
        db.close()


def _release_deferred(db) -> list[str]:
    from app.services import dispatcher
    from app.services.common import utcnow

    requests = dispatcher.release_deferred(db, utcnow())
    db.commit()
    return _queue_deliveries(requests)


@celery_app.task(name="app.tasks.notifications.check_escalations", ignore_result=True)
def check_escalations() -> None:
    from app.db import SessionLocal

    db = SessionLocal()
    try:
        _check_escalations(db)
    except Exception as e:
        db.rollback()
        logger.exception("Failed to check escalations: %s", e)
    finally:
        db.close()


def _check_escalations(db) -> int:
    from app.services import dispatcher
    from app.services.common import utcnow
    from app.services.event import dispatch_published

    escalated = dispatcher.due_escalations(db, utcnow())
    db.commit()
    dispatch_published(db)
    if escalated:
        logger.info("Raised %d escalation(s)", len(escalated))
    return len(escalated)


@celery_app.task(name="app.tasks.notifications.flush_digests", ignore_result=True)
def flush_digests() -> None:
    from app.db import SessionLocal

    db = SessionLocal()
    try:
        _flush_digests(db)
    except Exception as e:
        db.rollback()
        logger.exception("Failed to flush digests: %s", e)
    finally:
        db.close()


def _flush_digests(db) -> list[str]:
    from app.services import dispatcher
    from app.services.common import utcnow
    from app.services.event import discard_published

    requests = dispatcher.flush_digests(db, utcnow())
    db.commit()
    # Digest events already carry their delivery row.
    discard_published(db)
    return _queue_deliveries(requests)


@celery_app.task(
    name="app.tasks.notifications.reconcile_undispatched", ignore_result=True
)
def reconcile_undispatched() -> None:
    """Re-queue events and deliveries whose original enqueue was lost."""
    from app.db import SessionLocal

    db = SessionLocal()
    try:
        _reconcile(db)
    except Exception as e:
        logger.exception("Failed to reconcile notification dispatch: %s", e)
    finally:
        db.close()


def _reconcile(db) -> tuple[int, int]:
    from app.services import dispatcher
    from app.services.common import utcnow
    from app.services.event import enqueue_dispatch

    now = utcnow()
    event_ids = dispatcher.reconcile_candidates(db, now)
    for event_id in event_ids:
        enqueue_dispatch(event_id)
    delivery_ids = dispatcher.stale_pending_deliveries(db, now)
    for delivery_id in delivery_ids:
        try:
            deliver_send_request.delay(str(delivery_id))
        except Exception as e:
            logger.exception("Failed to re-queue delivery %s: %s", delivery_id, e)
    if event_ids or delivery_ids:
        logger.warning(
            "Reconciled %d undispatched event(s) and %d stale delivery(ies)",
            len(event_ids),
            len(delivery_ids),
        )
    return len(event_ids), len(delivery_ids)
