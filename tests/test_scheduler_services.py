from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from app.models.compliance import (
    ObligationInstance,
    ObligationStatus,
    ObligationStatusTransition,
    Periodicity,
    ReminderLog,
)
from app.models.notification import NotificationEvent, Severity
from app.schemas.preferences import AlertPreferenceSnapshot, AlertPreferenceUpdate
from app.services import scheduler
from app.services.preferences import alert_preferences

NOW = datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


def _instances(db, entity):
    return db.scalars(
        select(ObligationInstance)
        .where(ObligationInstance.entity_id == entity.id)
        .order_by(ObligationInstance.period_start)
    ).all()


def _events(db, event_type=None):
    query = select(NotificationEvent)
    if event_type:
        query = query.where(NotificationEvent.event_type == event_type)
    return db.scalars(query).all()


class TestRollForward:
    def test_creates_periods_inside_horizon(self, db_session, entity, definition) -> None:
        created = scheduler.roll_forward(db_session, TODAY)

        keys = [i.period_key for i in _instances(db_session, entity)]
        assert len(created) == 3
        # December is still open: its 20 January deadline has not passed.
        assert keys == ["2025-12", "2026-01", "2026-02"]
        first = _instances(db_session, entity)[0]
        assert first.due_date == date(2026, 1, 20)
        assert first.status == ObligationStatus.pending
        opened = db_session.scalars(
            select(ObligationStatusTransition).where(
                ObligationStatusTransition.instance_id == first.id
            )
        ).all()
        assert [t.to_status for t in opened] == [ObligationStatus.pending]

    def test_rerun_is_a_no_op(self, db_session, entity, definition) -> None:
        scheduler.roll_forward(db_session, TODAY)
        again = scheduler.roll_forward(db_session, TODAY)

        assert again == []
        assert len(_instances(db_session, entity)) == 3

    def test_continues_from_last_period(self, db_session, entity, definition) -> None:
        scheduler.roll_forward(db_session, TODAY)
        created = scheduler.roll_forward(db_session, date(2026, 2, 25))

        assert [i.period_key for i in created] == ["2026-03", "2026-04"]

    def test_respects_entity_types(self, db_session, factories) -> None:
        entity = factories.entity(entity_type="llp")
        factories.definition(applicable_entity_types=["private_limited"])

        assert scheduler.roll_forward(db_session, TODAY) == []
        assert _instances(db_session, entity) == []

    def test_skips_archived_entities(self, db_session, factories, definition) -> None:
        factories.entity(is_archived=True)

        assert scheduler.roll_forward(db_session, TODAY) == []

    def test_one_time_obligation_created_once(self, db_session, factories) -> None:
        entity = factories.entity(onboarded_on=date(2026, 1, 5))
        factories.definition(
            code="INC-20A", periodicity=Periodicity.one_time, due_offset_days=30
        )

        scheduler.roll_forward(db_session, TODAY)
        scheduler.roll_forward(db_session, TODAY + timedelta(days=30))

        instances = _instances(db_session, entity)
        assert len(instances) == 1
        assert instances[0].period_key == "ONCE"
        assert instances[0].due_date == date(2026, 2, 4)

    def test_effective_window_limits_periods(self, db_session, entity, factories) -> None:
        factories.definition(effective_until=date(2025, 12, 31))

        scheduler.roll_forward(db_session, date(2025, 12, 1))

        assert [i.period_key for i in _instances(db_session, entity)] == [
            "2025-11",
            "2025-12",
        ]


class TestReminderSchedule:
    def test_offsets_within_window(self) -> None:
        schedule = scheduler.reminder_schedule(date(2026, 1, 17), (7, 3, 1, 0), TODAY)
        assert schedule == [
            (7, date(2026, 1, 10)),
            (3, date(2026, 1, 14)),
            (1, date(2026, 1, 16)),
            (0, date(2026, 1, 17)),
        ]

    def test_drops_past_and_negative_offsets(self) -> None:
        schedule = scheduler.reminder_schedule(date(2026, 1, 12), (7, 1, -2), TODAY)
        assert schedule == [(1, date(2026, 1, 11))]


class TestEmitDueReminders:
    def test_emits_each_reminder_once(self, db_session, factories, entity, definition) -> None:
        instance = factories.instance(entity, definition, TODAY + timedelta(days=7))

        first = scheduler.emit_due_reminders(db_session, entity.id, NOW)
        second = scheduler.emit_due_reminders(db_session, entity.id, NOW)

        assert len(first) == 1
        assert second == []
        event = first[0]
        assert event.severity == Severity.warning
        assert event.dedup_key == f"reminder:{instance.id}:7"
        logs = db_session.scalars(select(ReminderLog)).all()
        assert [(log.offset_days, log.event_id) for log in logs] == [(7, event.id)]

    def test_next_offset_fires_on_its_day(self, db_session, factories, entity, definition) -> None:
        factories.instance(entity, definition, TODAY + timedelta(days=7))
        scheduler.emit_due_reminders(db_session, entity.id, NOW)

        nothing = scheduler.emit_due_reminders(db_session, entity.id, NOW + timedelta(days=1))
        day_before = scheduler.emit_due_reminders(
            db_session, entity.id, NOW + timedelta(days=6)
        )

        assert nothing == []
        assert len(day_before) == 1
        assert day_before[0].severity == Severity.critical

    def test_uses_domain_reminder_days(self, db_session, factories, entity, definition) -> None:
        factories.instance(entity, definition, TODAY + timedelta(days=10))
        assert scheduler.emit_due_reminders(db_session, entity.id, NOW) == []

        snapshot = AlertPreferenceSnapshot.model_validate(
            {"domains": {"TAX_GST": {"reminder_days": [10, 2]}}}
        )
        alert_preferences.update(
            db_session, entity.id, AlertPreferenceUpdate(preferences=snapshot)
        )
        emitted = scheduler.emit_due_reminders(db_session, entity.id, NOW)

        assert len(emitted) == 1
        assert emitted[0].payload["offset_days"] == 10
        assert emitted[0].severity == Severity.info

    def test_overdue_instances_get_no_reminders(
        self, db_session, factories, entity, definition
    ) -> None:
        factories.instance(
            entity, definition, TODAY, status=ObligationStatus.overdue
        )

        assert scheduler.emit_due_reminders(db_session, entity.id, NOW) == []


class TestMarkOverdue:
    def test_flags_and_accrues_penalty(self, db_session, factories, entity, definition) -> None:
        instance = factories.instance(entity, definition, TODAY - timedelta(days=5))

        events = scheduler.mark_overdue(db_session, entity.id, NOW)

        assert instance.status == ObligationStatus.overdue
        assert instance.penalty_accrued == Decimal("250.00")
        assert [e.event_type for e in events] == ["compliance.overdue"]
        assert events[0].severity == Severity.critical

    def test_penalty_keeps_growing_without_new_alerts(
        self, db_session, factories, entity, definition
    ) -> None:
        instance = factories.instance(entity, definition, TODAY - timedelta(days=5))
        scheduler.mark_overdue(db_session, entity.id, NOW)

        later = scheduler.mark_overdue(db_session, entity.id, NOW + timedelta(days=2))

        assert later == []
        assert instance.penalty_accrued == Decimal("350.00")
        assert len(_events(db_session, "compliance.overdue")) == 1

    def test_due_today_is_not_overdue(self, db_session, factories, entity, definition) -> None:
        instance = factories.instance(entity, definition, TODAY)

        assert scheduler.mark_overdue(db_session, entity.id, NOW) == []
        assert instance.status == ObligationStatus.pending
