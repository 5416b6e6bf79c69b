import math
from collections import Counter
from datetime import datetime, timedelta, timezone

from app.models.compliance import PriorityLevel
from app.models.workflow import QueueItem, QueueItemStatus
from app.schemas.workflow import QueueMemberCreate
from app.services import work_queue

T = datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)


def _item(db, title, priority=PriorityLevel.high, deadline=None, entered=T, queue="qc"):
    item = QueueItem(
        queue_name=queue,
        title=title,
        priority=priority,
        sla_deadline=deadline,
        entered_at=entered,
        status=QueueItemStatus.waiting,
    )
    db.add(item)
    db.flush()
    return item


def _member(db, actor_id, queue="qc", max_load=None, is_active=True):
    return work_queue.add_member(
        db, queue, QueueMemberCreate(actor_id=actor_id, max_load=max_load, is_active=is_active)
    )


class TestCandidates:
    def test_priority_then_deadline(self, db_session) -> None:
        later_high = _item(db_session, "high-2h", deadline=T + timedelta(hours=2))
        critical = _item(
            db_session, "critical", PriorityLevel.critical, deadline=T + timedelta(hours=1)
        )
        sooner_high = _item(db_session, "high-1h", deadline=T + timedelta(hours=1))
        _member(db_session, "alice")

        assigned = work_queue.auto_assign(db_session, "qc", now=T)

        assert [i.id for i in assigned] == [critical.id, sooner_high.id, later_high.id]

    def test_items_without_deadline_go_last(self, db_session) -> None:
        no_deadline = _item(db_session, "open", entered=T - timedelta(days=2))
        with_deadline = _item(db_session, "due", deadline=T + timedelta(days=5))

        assert work_queue.candidates(db_session, "qc") == [with_deadline, no_deadline]

    def test_longest_waiting_breaks_ties(self, db_session) -> None:
        newer = _item(db_session, "newer", entered=T)
        older = _item(db_session, "older", entered=T - timedelta(hours=3))

        assert work_queue.candidates(db_session, "qc") == [older, newer]


class TestAssignment:
    def test_spreads_load_evenly(self, db_session) -> None:
        for n in range(7):
            _item(db_session, f"item-{n}")
        actors = ["alice", "bob", "carol"]
        for actor in actors:
            _member(db_session, actor)

        assigned = work_queue.auto_assign(db_session, "qc", now=T)

        loads = Counter(i.assignee_id for i in assigned)
        assert len(assigned) == 7
        assert max(loads.values()) - min(loads.values()) <= 1
        assert max(loads.values()) <= math.ceil(7 / len(actors))

    def test_respects_max_load(self, db_session) -> None:
        for n in range(3):
            _item(db_session, f"item-{n}")
        _member(db_session, "alice", max_load=1)

        assigned = work_queue.auto_assign(db_session, "qc", now=T)

        assert len(assigned) == 1
        assert len(work_queue.candidates(db_session, "qc")) == 2

    def test_load_counts_other_queues(self, db_session) -> None:
        busy = _item(db_session, "elsewhere", queue="ops")
        busy.status = QueueItemStatus.assigned
        busy.assignee_id = "alice"
        _item(db_session, "next")
        _member(db_session, "alice")
        _member(db_session, "bob")

        item = work_queue.assign(db_session, "qc", now=T)

        assert item.assignee_id == "bob"

    def test_inactive_members_skipped(self, db_session) -> None:
        _item(db_session, "only")
        _member(db_session, "alice", is_active=False)

        assert work_queue.assign(db_session, "qc", now=T) is None

    def test_empty_queue(self, db_session) -> None:
        _member(db_session, "alice")

        assert work_queue.assign(db_session, "qc", now=T) is None

    def test_member_upsert(self, db_session) -> None:
        _member(db_session, "alice")
        _member(db_session, "alice", max_load=4)

        members = work_queue.list_members(db_session, "qc")
        assert [(m.actor_id, m.max_load) for m in members] == [("alice", 4)]
