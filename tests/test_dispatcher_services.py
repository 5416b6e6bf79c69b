import uuid
from datetime import datetime, time, timedelta, timezone
from types import SimpleNamespace

import pytest
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
from app.services.dispatcher import EntityContact, in_quiet_hours, route
from app.services.event import EventType, publish_event
from app.services.preferences import alert_preferences

NOW = datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)
CONTACT = EntityContact(email="owner@acme.example", phone="+911234567890", timezone="UTC")


def _event(severity=Severity.warning, domain=Domain.TAX_GST, is_escalation=False):
    return SimpleNamespace(
        entity_id=uuid.uuid4(),
        severity=severity,
        domain=domain,
        is_escalation=is_escalation,
    )


def _prefs(**data):
    return AlertPreferenceSnapshot.model_validate(data)


def _outcomes(decision):
    return {
        (c.channel.value if c.channel else None): (c.status.value, c.reason)
        for c in decision.channels
    }


class TestRoute:
    def test_defaults_for_warning(self) -> None:
        decision = route(_event(), _prefs(), NOW, CONTACT)

        outcomes = _outcomes(decision)
        assert outcomes["email"] == ("pending", None)
        assert outcomes["in_app"] == ("pending", None)
        assert outcomes["push"] == ("suppressed", "no_recipient")
        email = next(c for c in decision.channels if c.channel == Channel.email)
        assert email.recipients == ("owner@acme.example",)

    def test_master_switch(self) -> None:
        decision = route(_event(), _prefs(notifications_enabled=False), NOW, CONTACT)

        assert decision.sendable == ()
        assert {c.reason for c in decision.channels} == {"disabled"}
        assert len(decision.channels) == len(Channel)

    def test_severity_disabled(self) -> None:
        prefs = _prefs(severities={"warning": {"enabled": False}})
        decision = route(_event(), prefs, NOW, CONTACT)

        assert {c.reason for c in decision.channels} == {"severity_disabled"}

    def test_domain_disabled(self) -> None:
        prefs = _prefs(domains={"TAX_GST": {"enabled": False}})

        assert {c.reason for c in route(_event(), prefs, NOW, CONTACT).channels} == {
            "domain_disabled"
        }
        other = route(_event(domain=Domain.LABOUR), prefs, NOW, CONTACT)
        assert other.sendable

    def test_sms_only_for_critical(self) -> None:
        prefs = _prefs(
            channels={"sms": {"enabled": True, "only_critical": True}},
            severities={"warning": {"channels": ["email", "sms"]}},
        )

        warning = _outcomes(route(_event(), prefs, NOW, CONTACT))
        critical = _outcomes(route(_event(Severity.critical), prefs, NOW, CONTACT))

        assert warning["sms"] == ("suppressed", "sms_only_critical")
        assert critical["sms"] == ("pending", None)

    def test_channel_disabled(self) -> None:
        prefs = _prefs(channels={"email": {"enabled": False}})

        assert _outcomes(route(_event(), prefs, NOW, CONTACT))["email"] == (
            "suppressed",
            "channel_disabled",
        )

    def test_explicit_recipients_win(self) -> None:
        prefs = _prefs(
            channels={"email": {"primary_email": "cfo@acme.example", "secondary_email": "ca@firm.example"}}
        )
        decision = route(_event(), prefs, NOW, CONTACT)

        email = next(c for c in decision.channels if c.channel == Channel.email)
        assert email.recipients == ("cfo@acme.example", "ca@firm.example")


class TestQuietHours:
    QUIET = {"enabled": True, "start_time": "22:00", "end_time": "07:00", "timezone": "UTC"}

    def test_defers_to_end_of_window(self) -> None:
        night = datetime(2026, 1, 10, 23, 30, tzinfo=timezone.utc)
        decision = route(_event(), _prefs(quiet_hours=self.QUIET), night, CONTACT)

        assert len(decision.channels) == 1
        deferred = decision.channels[0]
        assert deferred.status == DeliveryStatus.deferred
        assert deferred.channel is None
        assert deferred.reason == "quiet_hours"
        assert decision.deferred_until == datetime(2026, 1, 11, 7, 0, tzinfo=timezone.utc)

    def test_critical_bypasses(self) -> None:
        night = datetime(2026, 1, 10, 23, 30, tzinfo=timezone.utc)
        decision = route(_event(Severity.critical), _prefs(quiet_hours=self.QUIET), night, CONTACT)

        assert decision.deferred_until is None
        assert decision.sendable

    def test_outside_window(self) -> None:
        decision = route(_event(), _prefs(quiet_hours=self.QUIET), NOW, CONTACT)
        assert decision.deferred_until is None

    @pytest.mark.parametrize(
        "local,expected",
        [(time(23, 0), True), (time(2, 0), True), (time(7, 0), False), (time(12, 0), False)],
    )
    def test_window_wraps_midnight(self, local, expected) -> None:
        assert in_quiet_hours(local, time(22, 0), time(7, 0)) is expected

    def test_empty_window_never_matches(self) -> None:
        assert in_quiet_hours(time(9, 0), time(9, 0), time(9, 0)) is False


class TestDigestRouting:
    def test_info_email_is_batched(self) -> None:
        prefs = _prefs(channels={"email": {"digest_mode": "daily"}})
        decision = route(_event(Severity.info), prefs, NOW, CONTACT)

        email = next(c for c in decision.channels if c.channel == Channel.email)
        assert email.status == DeliveryStatus.batched
        assert email.digest_key == "daily:2026-01-10"
        assert email.scheduled_for == datetime(2026, 1, 11, 0, 0, tzinfo=timezone.utc)
        assert _outcomes(decision)["in_app"] == ("pending", None)

    def test_weekly_window_closes_monday(self) -> None:
        prefs = _prefs(channels={"email": {"digest_mode": "weekly"}})
        decision = route(_event(Severity.info), prefs, NOW, CONTACT)

        email = next(c for c in decision.channels if c.channel == Channel.email)
        assert email.digest_key == "weekly:2026-W02"
        assert email.scheduled_for == datetime(2026, 1, 12, 0, 0, tzinfo=timezone.utc)

    def test_immediate_severity_ignores_digest(self) -> None:
        prefs = _prefs(channels={"email": {"digest_mode": "daily"}})
        decision = route(_event(Severity.warning), prefs, NOW, CONTACT)

        assert _outcomes(decision)["email"] == ("pending", None)


class TestEscalationRouting:
    def test_single_email_to_escalation_contact(self) -> None:
        prefs = _prefs(escalation={"enabled": True, "escalate_to": "partner@firm.example"})
        decision = route(_event(Severity.critical, is_escalation=True), prefs, NOW, CONTACT)

        assert decision.is_escalation is True
        assert [(c.channel, c.recipients) for c in decision.channels] == [
            (Channel.email, ("partner@firm.example",))
        ]

    def test_no_recipient(self) -> None:
        decision = route(_event(Severity.critical, is_escalation=True), _prefs(), NOW, None)

        assert decision.sendable == ()
        assert decision.channels[0].reason == "no_recipient"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def _set_prefs(db, entity, **data):
    alert_preferences.update(
        db, entity.id, AlertPreferenceUpdate(preferences=_prefs(**data))
    )


def _publish(db, entity, severity=Severity.warning, title="GSTR-3B due in 3 days"):
    return publish_event(
        db,
        EventType.reminder_due,
        entity_id=entity.id,
        severity=severity,
        title=title,
        body="Prepare the return.",
        domain=Domain.TAX_GST,
    )


def _deliveries(db, event):
    return db.scalars(
        select(NotificationDelivery).where(NotificationDelivery.event_id == event.id)
    ).all()


class TestDispatch:
    def test_persists_outcomes_and_returns_send_requests(self, db_session, entity) -> None:
        event = _publish(db_session, entity)

        requests = dispatcher.dispatch(db_session, event.id, NOW)

        assert [r.channel for r in requests] == ["email"]
        assert requests[0].recipients == ("owner@acme.example",)
        assert requests[0].payload["title"] == event.title
        statuses = {d.channel: d.status for d in _deliveries(db_session, event)}
        assert statuses[Channel.in_app] == DeliveryStatus.sent
        assert statuses[Channel.email] == DeliveryStatus.pending
        assert statuses[Channel.push] == DeliveryStatus.suppressed

    def test_is_idempotent(self, db_session, entity) -> None:
        event = _publish(db_session, entity)
        dispatcher.dispatch(db_session, event.id, NOW)

        assert dispatcher.dispatch(db_session, event.id, NOW) == []
        assert len(_deliveries(db_session, event)) == 3

    def test_missing_event(self, db_session) -> None:
        assert dispatcher.dispatch(db_session, uuid.uuid4(), NOW) == []


class TestReleaseDeferred:
    def test_released_after_window(self, db_session, entity) -> None:
        _set_prefs(
            db_session,
            entity,
            quiet_hours={"enabled": True, "start_time": "22:00", "end_time": "07:00", "timezone": "UTC"},
        )
        night = datetime(2026, 1, 10, 23, 30, tzinfo=timezone.utc)
        event = _publish(db_session, entity)
        assert dispatcher.dispatch(db_session, event.id, night) == []
        [deferred] = _deliveries(db_session, event)
        assert deferred.status == DeliveryStatus.deferred

        early = dispatcher.release_deferred(db_session, datetime(2026, 1, 11, 6, 0, tzinfo=timezone.utc))
        released = dispatcher.release_deferred(
            db_session, datetime(2026, 1, 11, 7, 0, tzinfo=timezone.utc)
        )

        assert early == []
        assert [r.channel for r in released] == ["email"]
        assert deferred.status != DeliveryStatus.deferred
        assert len(_deliveries(db_session, event)) == 3


class TestFlushDigests:
    def test_one_digest_per_window(self, db_session, entity) -> None:
        _set_prefs(db_session, entity, channels={"email": {"digest_mode": "daily"}})
        first = _publish(db_session, entity, Severity.info, "Reminder one")
        second = _publish(db_session, entity, Severity.info, "Reminder two")
        dispatcher.dispatch(db_session, first.id, NOW)
        dispatcher.dispatch(db_session, second.id, NOW + timedelta(hours=1))

        assert dispatcher.flush_digests(db_session, NOW + timedelta(hours=2)) == []
        requests = dispatcher.flush_digests(
            db_session, datetime(2026, 1, 11, 0, 5, tzinfo=timezone.utc)
        )

        assert len(requests) == 1
        assert requests[0].digest_key == "daily:2026-01-10"
        assert "Reminder one" in requests[0].payload["body"]
        assert "Reminder two" in requests[0].payload["body"]
        batched = [
            d
            for d in _deliveries(db_session, first) + _deliveries(db_session, second)
            if d.channel == Channel.email
        ]
        assert {(d.status, d.reason) for d in batched} == {(DeliveryStatus.sent, "digest")}


class TestEscalations:
    def _escalating_entity(self, db, entity):
        _set_prefs(db, entity, escalation={"enabled": True, "escalate_after_hours": 24})

    def test_escalates_once_after_timeout(self, db_session, entity) -> None:
        self._escalating_entity(db_session, entity)
        event = _publish(db_session, entity)
        dispatcher.dispatch(db_session, event.id, NOW)

        assert dispatcher.due_escalations(db_session, NOW + timedelta(hours=23)) == []
        escalated = dispatcher.due_escalations(db_session, NOW + timedelta(hours=25))
        again = dispatcher.due_escalations(db_session, NOW + timedelta(hours=50))

        assert len(escalated) == 1
        assert escalated[0].parent_event_id == event.id
        assert escalated[0].is_escalation is True
        assert escalated[0].severity == Severity.critical
        assert again == []

    def test_escalations_are_never_escalated(self, db_session, entity) -> None:
        self._escalating_entity(db_session, entity)
        event = _publish(db_session, entity)
        dispatcher.dispatch(db_session, event.id, NOW)
        [escalation] = dispatcher.due_escalations(db_session, NOW + timedelta(hours=25))
        dispatcher.dispatch(db_session, escalation.id, NOW + timedelta(hours=25))

        later = dispatcher.due_escalations(db_session, NOW + timedelta(days=5))

        assert later == []
        assert [d.channel for d in _deliveries(db_session, escalation)] == [Channel.email]

    def test_acknowledged_event_not_escalated(self, db_session, entity) -> None:
        self._escalating_entity(db_session, entity)
        event = _publish(db_session, entity)
        dispatcher.dispatch(db_session, event.id, NOW)

        first = dispatcher.acknowledge(db_session, event.id, "owner")
        second = dispatcher.acknowledge(db_session, event.id, "someone-else")

        assert first.id == second.id
        assert dispatcher.due_escalations(db_session, NOW + timedelta(hours=30)) == []

    def test_disabled_escalation(self, db_session, entity) -> None:
        event = _publish(db_session, entity)
        dispatcher.dispatch(db_session, event.id, NOW)

        assert dispatcher.due_escalations(db_session, NOW + timedelta(days=3)) == []


def test_alert_view_reports_acknowledgement(db_session, entity) -> None:
    event = _publish(db_session, entity)
    dispatcher.acknowledge(db_session, event.id, "owner")

    view = dispatcher.alert_view(dispatcher.get_event(db_session, event.id))

    assert view["acknowledged"] is True
    assert db_session.get(NotificationEvent, event.id).acknowledgement.actor_id == "owner"
