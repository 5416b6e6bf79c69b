from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import select

from app.models.compliance import Domain
from app.models.notification import (
    Channel,
    DeliveryStatus,
    NotificationDelivery,
    NotificationEvent,
    Severity,
)
from app.schemas.preferences import AlertPreferenceSnapshot, AlertPreferenceUpdate
from app.services import dispatcher
from app.services.channels import ChannelDeliveryError
from app.services.common import utcnow
from app.services.event import EventType, discard_published, publish_event
from app.services.preferences import alert_preferences
from app.tasks.notifications import (
    _attempt_delivery,
    _check_escalations,
    _dispatch,
    _give_up,
    _reconcile,
)


def _publish(db, entity, title="GSTR-3B due in 3 days"):
    return publish_event(
        db,
        EventType.reminder_due,
        entity_id=entity.id,
        severity=Severity.warning,
        title=title,
        body="Prepare the return.",
        domain=Domain.TAX_GST,
    )

def _email_delivery(db, entity):
    event = _publish(db, entity)
    dispatcher.dispatch(db, event.id, utcnow())
    db.commit()
    return db.scalars(
        select(NotificationDelivery).where(
            NotificationDelivery.event_id == event.id,
            NotificationDelivery.channel == Channel.email,
        )
    ).one()

class TestDispatchTask:
    def test_queues_one_delivery_per_send_request(
        self, db_session, celery_calls, entity
    ) -> None:
        event = _publish(db_session, entity)
        db_session.commit()

        queued = _dispatch(db_session, str(event.id))

        assert len(queued) == 1
        celery_calls["deliver"].assert_called_once_with(queued[0])

    def test_redelivery_of_the_same_event_queues_nothing(
        self, db_session, celery_calls, entity
    ) -> None:
        event = _publish(db_session, entity)
        db_session.commit()
        _dispatch(db_session, str(event.id))

        assert _dispatch(db_session, str(event.id)) == []
        assert celery_calls["deliver"].call_count == 1

class TestAttemptDelivery:
    @patch("app.services.channels.send_channel_message")
    def test_success_marks_sent(self, mock_send, db_session, entity) -> None:
        delivery = _email_delivery(db_session, entity)

        retry = _attempt_delivery(db_session, str(delivery.id))

        assert retry is False
        db_session.refresh(delivery)
        assert delivery.status == DeliveryStatus.sent
        assert delivery.attempts == 1
        channel, recipients, template, payload = mock_send.call_args.args
        assert channel == "email"
        assert recipients == ["owner@acme.example"]
        assert template == "compliance.reminder_due"
        assert payload["title"] == "GSTR-3B due in 3 days"

    @patch("app.services.channels.send_channel_message")
    def test_failure_asks_for_retry(self, mock_send, db_session, entity) -> None:
        mock_send.side_effect = ChannelDeliveryError("gateway timeout")
        delivery = _email_delivery(db_session, entity)

        retry = _attempt_delivery(db_session, str(delivery.id))

        assert retry is True
        db_session.refresh(delivery)
        assert delivery.status == DeliveryStatus.pending
        assert delivery.last_error == "gateway timeout"

    @patch("app.services.channels.send_channel_message")
    def test_final_failure_marks_failed(self, mock_send, db_session, entity) -> None:
        mock_send.side_effect = ChannelDeliveryError("gateway timeout")
        delivery = _email_delivery(db_session, entity)

        retry = _attempt_delivery(db_session, str(delivery.id), final=True)

        assert retry is False
        db_session.refresh(delivery)
        assert delivery.status == DeliveryStatus.failed
        assert delivery.reason == "max_retries_exceeded"

    @patch("app.services.channels.send_channel_message")
    def test_only_pending_deliveries_are_sent(self, mock_send, db_session, entity) -> None:
        delivery = _email_delivery(db_session, entity)
        _attempt_delivery(db_session, str(delivery.id))

        assert _attempt_delivery(db_session, str(delivery.id)) is False
        assert mock_send.call_count == 1

    def test_give_up(self, db_session, entity) -> None:
        delivery = _email_delivery(db_session, entity)

        _give_up(db_session, str(delivery.id))

        db_session.refresh(delivery)
        assert delivery.status == DeliveryStatus.failed

class TestReconcile:
    def test_requeues_events_without_deliveries(
        self, db_session, celery_calls, entity
    ) -> None:
        stale = _publish(db_session, entity, "stale")
        stale.created_at = utcnow() - timedelta(hours=1)
        _publish(db_session, entity, "fresh")
        db_session.commit()

        events, deliveries = _reconcile(db_session)

        assert (events, deliveries) == (1, 0)
        celery_calls["dispatch"].assert_called_once_with(str(stale.id))

    def test_requeues_stale_pending_deliveries(
        self, db_session, celery_calls, entity
    ) -> None:
        delivery = _email_delivery(db_session, entity)
        delivery.created_at = utcnow() - timedelta(hours=1)
        db_session.commit()

        assert _reconcile(db_session) == (0, 1)
        celery_calls["deliver"].assert_called_once_with(str(delivery.id))

def test_check_escalations_dispatches_after_commit(
    db_session, celery_calls, entity
) -> None:
    alert_preferences.update(
        db_session,
        entity.id,
        AlertPreferenceUpdate(
            preferences=AlertPreferenceSnapshot.model_validate(
                {"escalation": {"enabled": True, "escalate_after_hours": 4}}
            )
        ),
    )
    event = _publish(db_session, entity)
    dispatcher.dispatch(db_session, event.id, utcnow() - timedelta(hours=5))
    db_session.commit()
    discard_published(db_session)

    assert _check_escalations(db_session) == 1

    escalation = db_session.scalars(
        select(NotificationEvent).where(NotificationEvent.parent_event_id == event.id)
    ).one()
    celery_calls["dispatch"].assert_called_once_with(str(escalation.id))
