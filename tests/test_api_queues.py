from datetime import timedelta

import pytest

from app.models.compliance import PriorityLevel
from app.models.workflow import QueueItem, QueueItemStatus
from app.services.common import utcnow


@pytest.fixture()
def queue_items(db_session):
    now = utcnow()
    items = [
        QueueItem(
            queue_name="ops",
            title=title,
            priority=priority,
            sla_deadline=now + timedelta(hours=hours),
            entered_at=now,
            status=QueueItemStatus.waiting,
        )
        for title, priority, hours in (
            ("TDS return", PriorityLevel.medium, 4),
            ("GSTR-3B", PriorityLevel.critical, 8),
            ("PF challan", PriorityLevel.high, 2),
        )
    ]
    db_session.add_all(items)
    db_session.commit()
    return items


class TestMemberEndpoints:
    def test_put_and_list(self, client) -> None:
        resp = client.put("/queues/ops/members", json={"actor_id": "alice", "max_load": 3})
        assert resp.status_code == 200
        assert resp.json()["max_load"] == 3

        members = client.get("/queues/ops/members").json()
        assert [m["actor_id"] for m in members] == ["alice"]

    def test_invalid_max_load(self, client) -> None:
        resp = client.put("/queues/ops/members", json={"actor_id": "alice", "max_load": 0})
        assert resp.status_code == 422


class TestAssignmentEndpoints:
    def test_assign_takes_highest_priority(self, client, queue_items) -> None:
        client.put("/queues/ops/members", json={"actor_id": "alice"})

        resp = client.post("/queues/ops/assign")

        assert resp.status_code == 200
        assert resp.json()["item_id"] == str(queue_items[1].id)
        assert resp.json()["actor_id"] == "alice"

    def test_assign_with_nobody_available(self, client, queue_items) -> None:
        resp = client.post("/queues/ops/assign")
        assert resp.status_code == 200
        assert resp.json() is None

    def test_auto_assign_spreads_work(self, client, queue_items) -> None:
        client.put("/queues/ops/members", json={"actor_id": "alice"})
        client.put("/queues/ops/members", json={"actor_id": "bob"})

        resp = client.post("/queues/ops/auto-assign")

        assert resp.status_code == 200
        actors = [a["actor_id"] for a in resp.json()]
        assert len(actors) == 3
        assert sorted(set(actors)) == ["alice", "bob"]

    def test_list_items_by_status(self, client, queue_items) -> None:
        client.put("/queues/ops/members", json={"actor_id": "alice"})
        client.post("/queues/ops/assign")

        waiting = client.get("/queues/ops/items?status=waiting").json()
        assigned = client.get("/queues/ops/items?status=assigned").json()

        assert len(waiting) == 2
        assert [i["title"] for i in assigned] == ["GSTR-3B"]
