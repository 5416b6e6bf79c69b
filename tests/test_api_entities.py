import uuid
from datetime import timedelta
from unittest.mock import patch

from app.services.common import utcnow
from app.services.locks import EntityLockTimeout


def _today():
    return utcnow().date()


class TestEntityEndpoints:
    def test_create(self, client) -> None:
        resp = client.post(
            "/entities",
            json={
                "name": "Acme Pvt Ltd",
                "entity_type": "private_limited",
                "timezone": "Asia/Kolkata",
                "primary_contact_email": "cfo@acme.example",
            },
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["name"] == "Acme Pvt Ltd"
        assert data["lifecycle_stage"] == "onboarding"
        assert data["is_archived"] is False

    def test_get(self, client, entity) -> None:
        resp = client.get(f"/entities/{entity.id}")
        assert resp.status_code == 200
        assert resp.json()["id"] == str(entity.id)

    def test_get_not_found(self, client) -> None:
        resp = client.get(f"/entities/{uuid.uuid4()}")
        assert resp.status_code == 404
        assert resp.json() == {
            "code": "http_404",
            "message": "Entity not found",
            "details": None,
        }

    def test_list_and_filter(self, client, factories) -> None:
        factories.entity()
        factories.entity(entity_type="llp")

        resp = client.get("/entities?entity_type=llp")
        assert resp.status_code == 200
        assert resp.json()["count"] == 1

    def test_update(self, client, entity) -> None:
        resp = client.patch(f"/entities/{entity.id}", json={"lifecycle_stage": "active"})
        assert resp.status_code == 200
        assert resp.json()["lifecycle_stage"] == "active"

    def test_archive_hides_from_list(self, client, entity) -> None:
        resp = client.delete(f"/entities/{entity.id}")
        assert resp.status_code == 204

        assert client.get("/entities").json()["count"] == 0
        assert client.get("/entities?include_archived=true").json()["count"] == 1

    def test_validation_error_shape(self, client) -> None:
        resp = client.post("/entities", json={"name": "No type"})
        assert resp.status_code == 422
        body = resp.json()
        assert body["code"] == "validation_error"
        assert body["message"] == "Validation error"
        assert body["details"][0]["loc"] == ["body", "entity_type"]
        assert all("url" not in error for error in body["details"])


class TestEntityState:
    def test_state_without_obligations(self, client, entity) -> None:
        resp = client.get(f"/entities/{entity.id}/state")
        assert resp.status_code == 200
        data = resp.json()
        assert data["overall_state"] == "GREEN"
        assert data["risk_score"] == 0
        assert data["next_action_required"] is None

    def test_recalculate_persists_state(self, client, factories, entity, definition) -> None:
        factories.instance(entity, definition, _today() - timedelta(days=2))

        resp = client.post(f"/entities/{entity.id}/recalculate")
        assert resp.status_code == 200
        assert resp.json()["overall_state"] == "RED"

        stored = client.get(f"/entities/{entity.id}/state").json()
        assert stored["overall_state"] == "RED"
        gst = next(d for d in stored["domains"] if d["domain"] == "TAX_GST")
        assert gst["overdue_instances"] == 1

    def test_busy_entity_is_requeued(self, client, celery_calls, entity) -> None:
        with patch(
            "app.services.orchestrator.manual_recalculate",
            side_effect=EntityLockTimeout(entity.id, 10),
        ):
            resp = client.post(f"/entities/{entity.id}/recalculate")

        assert resp.status_code == 202
        assert resp.json() == {"status": "queued", "trigger": "manual_recalculate"}
        kwargs = celery_calls["trigger"].call_args.kwargs
        assert kwargs["kwargs"]["payload"] == {"entity_id": str(entity.id)}

    def test_unknown_entity(self, client) -> None:
        assert client.get(f"/entities/{uuid.uuid4()}/state").status_code == 404


class TestPreferences:
    def test_defaults(self, client, entity) -> None:
        resp = client.get(f"/entities/{entity.id}/preferences")
        assert resp.status_code == 200
        data = resp.json()
        assert data["version"] == 0
        assert data["preferences"]["notifications_enabled"] is True
        assert data["preferences"]["domains"]["TAX_GST"]["reminder_days"] == [7, 3, 1, 0]

    def test_update_bumps_version(self, client, entity) -> None:
        body = {
            "updated_by": "ops-1",
            "preferences": {
                "quiet_hours": {"enabled": True, "timezone": "Asia/Kolkata"},
                "channels": {"sms": {"enabled": True}},
            },
        }
        first = client.put(f"/entities/{entity.id}/preferences", json=body)
        second = client.put(f"/entities/{entity.id}/preferences", json=body)

        assert first.status_code == 200
        assert second.json()["version"] == 2
        assert second.json()["preferences"]["channels"]["sms"]["enabled"] is True

    def test_unknown_timezone_rejected(self, client, entity) -> None:
        resp = client.put(
            f"/entities/{entity.id}/preferences",
            json={"preferences": {"quiet_hours": {"timezone": "Mars/Olympus"}}},
        )
        assert resp.status_code == 422
        assert resp.json()["code"] == "validation_error"
        assert "Mars/Olympus" in resp.json()["details"][0]["msg"]

    def test_unknown_key_rejected(self, client, entity) -> None:
        resp = client.put(
            f"/entities/{entity.id}/preferences",
            json={"preferences": {"severities": {"urgent": {"enabled": False}}}},
        )
        assert resp.status_code == 422


class TestDocuments:
    def test_upload_starts_workflow(
        self, client, factories, entity, definition, filing_template
    ) -> None:
        instance = factories.instance(entity, definition, _today() + timedelta(days=20))

        resp = client.post(
            f"/entities/{entity.id}/documents",
            json={
                "obligation_instance_id": str(instance.id),
                "document_type": "bank_statement",
                "document_id": "dms-42",
            },
        )

        assert resp.status_code == 200
        assert resp.json()["entity_id"] == str(entity.id)
        fetched = client.get(f"/obligation-instances/{instance.id}").json()
        assert fetched["status"] == "in_progress"
        run = client.get(f"/workflow-runs/{fetched['workflow_run_id']}").json()
        assert run["frontier"] == ["prepare"]

    def test_upload_for_other_entity(self, client, factories, entity, definition) -> None:
        other = factories.entity()
        instance = factories.instance(entity, definition, _today())

        resp = client.post(
            f"/entities/{other.id}/documents",
            json={"obligation_instance_id": str(instance.id), "document_type": "challan"},
        )
        assert resp.status_code == 400


def test_alerts_listed_newest_first(client, factories, entity, definition) -> None:
    factories.instance(entity, definition, _today() - timedelta(days=1))
    client.post(f"/entities/{entity.id}/recalculate")

    resp = client.get(f"/entities/{entity.id}/alerts")

    assert resp.status_code == 200
    alerts = resp.json()
    assert [a["event_type"] for a in alerts] == ["compliance.state_changed"]
    assert alerts[0]["severity"] == "critical"
    assert alerts[0]["acknowledged"] is False
