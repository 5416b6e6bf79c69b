from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from app.models.compliance import ObligationDocument, ObligationStatus
from app.models.workflow import (
    QueueItem,
    QueueItemStatus,
    StepStatus,
    WorkflowRunStatus,
    WorkflowStepTransition,
)
from app.services import scheduler, workflow_executor
from app.services.state_aggregator import compute_entity_state
from app.services.workflow_steps import lagging_steps, stalled_steps

NOW = datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


def _steps(run):
    return {step.step_key: step for step in run.steps}


def _receive(db, instance, document_type="bank_statement", received_at=NOW):
    db.add(
        ObligationDocument(
            instance_id=instance.id,
            entity_id=instance.entity_id,
            document_type=document_type,
            received_at=received_at,
        )
    )
    db.flush()


@pytest.fixture()
def instance(factories, entity, definition):
    return factories.instance(entity, definition, TODAY + timedelta(days=3))


class TestTemplates:
    def test_create_stores_topological_positions(self, db_session, filing_template) -> None:
        positions = {s.key: s.position for s in filing_template.steps}
        assert positions == {"collect": 0, "prepare": 1, "review": 2, "file": 3}
        assert filing_template.version == 1

    def test_new_version_deactivates_previous(self, db_session, factories, filing_template) -> None:
        second = factories.template("default", [{"key": "only", "step_type": "ops_task"}])

        db_session.refresh(filing_template)
        assert second.version == 2
        assert filing_template.is_active is False

    def test_cycle_rejected(self, db_session, factories) -> None:
        with pytest.raises(HTTPException) as exc:
            factories.template(
                "loop",
                [
                    {"key": "a", "step_type": "ops_task", "depends_on": ["b"]},
                    {"key": "b", "step_type": "ops_task", "depends_on": ["a"]},
                ],
            )
        assert exc.value.status_code == 400
        assert exc.value.detail["code"] == "invalid_workflow"

    def test_unknown_action_rejected(self, db_session, factories) -> None:
        with pytest.raises(HTTPException) as exc:
            factories.template(
                "bad", [{"key": "a", "step_type": "automated", "action": "launch"}]
            )
        assert "unknown action" in exc.value.detail["details"][0]


class TestRun:
    def test_start_opens_roots(self, db_session, instance, filing_template) -> None:
        run = workflow_executor.start_run(db_session, instance.id, actor_id="ops-1", now=NOW)

        steps = _steps(run)
        assert workflow_executor.frontier(run) == ["collect"]
        assert steps["collect"].status == StepStatus.ready
        assert steps["collect"].sla_deadline is not None
        assert steps["prepare"].status == StepStatus.blocked
        assert instance.status == ObligationStatus.in_progress
        assert instance.workflow_run_id == run.id

    def test_second_active_run_refused(self, db_session, instance, filing_template) -> None:
        workflow_executor.start_run(db_session, instance.id, now=NOW)
        with pytest.raises(HTTPException) as exc:
            workflow_executor.start_run(db_session, instance.id, now=NOW)
        assert exc.value.status_code == 409

    def test_no_template(self, db_session, instance) -> None:
        with pytest.raises(HTTPException) as exc:
            workflow_executor.start_run(db_session, instance.id, now=NOW)
        assert exc.value.status_code == 404

    def test_documents_finish_client_task(self, db_session, instance, filing_template) -> None:
        run = workflow_executor.start_run(db_session, instance.id, now=NOW)
        _receive(db_session, instance)

        workflow_executor.refresh_client_steps(db_session, run, NOW)

        assert _steps(run)["collect"].status == StepStatus.done
        assert workflow_executor.frontier(run) == ["prepare"]
        item = db_session.scalars(select(QueueItem)).one()
        assert item.queue_name == "ops"
        assert item.status == QueueItemStatus.waiting

    def test_full_run_completes_obligation(self, db_session, instance, filing_template) -> None:
        run = workflow_executor.start_run(db_session, instance.id, now=NOW)
        _receive(db_session, instance)
        workflow_executor.refresh_client_steps(db_session, run, NOW)

        assert workflow_executor.advance(db_session, run.id, "prepare", "alice", now=NOW) == [
            "review"
        ]
        frontier = workflow_executor.advance(
            db_session, run.id, "review", "bob", decision="approved", now=NOW
        )

        assert frontier == []
        assert _steps(run)["file"].status == StepStatus.done
        assert run.status == WorkflowRunStatus.completed
        assert instance.status == ObligationStatus.completed
        state = compute_entity_state(db_session, instance.entity_id, NOW)
        assert state.overall_state == "GREEN"

    def test_rejected_review_reopens_upstream(self, db_session, instance, filing_template) -> None:
        run = workflow_executor.start_run(db_session, instance.id, now=NOW)
        _receive(db_session, instance)
        workflow_executor.refresh_client_steps(db_session, run, NOW)
        workflow_executor.advance(db_session, run.id, "prepare", "alice", now=NOW)

        frontier = workflow_executor.advance(
            db_session, run.id, "review", "bob", decision="rejected", note="wrong ITC", now=NOW
        )

        steps = _steps(run)
        assert frontier == ["prepare"]
        assert steps["review"].status == StepStatus.blocked
        assert steps["prepare"].status == StepStatus.ready
        assert steps["prepare"].completed_by is None
        ops_items = db_session.scalars(
            select(QueueItem).where(QueueItem.queue_name == "ops")
        ).all()
        assert sorted(i.status.value for i in ops_items) == ["done", "waiting"]

    def test_rejected_review_waits_for_fresh_client_documents(
        self, db_session, factories, instance
    ) -> None:
        factories.template(
            "default",
            [
                {
                    "key": "collect",
                    "step_type": "client_task",
                    "required_documents": ["invoice"],
                },
                {"key": "review", "step_type": "qa_review", "depends_on": ["collect"]},
            ],
        )
        _receive(db_session, instance, "invoice", received_at=NOW - timedelta(hours=1))
        run = workflow_executor.start_run(db_session, instance.id, now=NOW)
        assert _steps(run)["collect"].status == StepStatus.done

        frontier = workflow_executor.advance(
            db_session, run.id, "review", "bob", decision="rejected", note="blurred", now=NOW
        )

        steps = _steps(run)
        assert frontier == ["collect"]
        assert steps["collect"].status == StepStatus.ready
        assert steps["collect"].reopened_at == NOW
        assert steps["review"].status == StepStatus.blocked

        workflow_executor.refresh_client_steps(db_session, run, NOW + timedelta(minutes=5))
        assert steps["collect"].status == StepStatus.ready

        later = NOW + timedelta(hours=2)
        _receive(db_session, instance, "invoice", received_at=later)
        workflow_executor.refresh_client_steps(db_session, run, later)

        assert steps["collect"].status == StepStatus.done
        assert steps["review"].status == StepStatus.ready
        assert run.status == WorkflowRunStatus.active

    def test_rejected_review_does_not_rerun_automated_upstream(
        self, db_session, factories, instance
    ) -> None:
        factories.template(
            "default",
            [
                {"key": "compute", "step_type": "automated"},
                {"key": "review", "step_type": "qa_review", "depends_on": ["compute"]},
            ],
        )
        run = workflow_executor.start_run(db_session, instance.id, now=NOW)
        assert _steps(run)["compute"].status == StepStatus.done

        frontier = workflow_executor.advance(
            db_session, run.id, "review", "bob", decision="rejected", now=NOW
        )

        assert frontier == ["compute"]
        assert _steps(run)["compute"].status == StepStatus.ready

        frontier = workflow_executor.advance(db_session, run.id, "compute", "alice", now=NOW)
        assert frontier == ["review"]

    def test_completing_finished_step_is_a_no_op(
        self, db_session, instance, filing_template
    ) -> None:
        run = workflow_executor.start_run(db_session, instance.id, now=NOW)
        _receive(db_session, instance)
        workflow_executor.refresh_client_steps(db_session, run, NOW)
        before = len(db_session.scalars(select(WorkflowStepTransition)).all())

        frontier = workflow_executor.advance(db_session, run.id, "collect", "alice", now=NOW)

        assert frontier == ["prepare"]
        assert len(db_session.scalars(select(WorkflowStepTransition)).all()) == before

    def test_blocked_step_cannot_complete(self, db_session, instance, filing_template) -> None:
        run = workflow_executor.start_run(db_session, instance.id, now=NOW)
        with pytest.raises(HTTPException) as exc:
            workflow_executor.advance(db_session, run.id, "review", "bob", now=NOW)
        assert exc.value.status_code == 409

    def test_decision_only_for_reviews(self, db_session, instance, filing_template) -> None:
        run = workflow_executor.start_run(db_session, instance.id, now=NOW)
        with pytest.raises(HTTPException) as exc:
            workflow_executor.advance(
                db_session, run.id, "collect", "bob", decision="approved", now=NOW
            )
        assert exc.value.status_code == 400

    def test_false_precondition_skips_and_unblocks(
        self, db_session, factories, instance
    ) -> None:
        factories.template(
            "default",
            [
                {
                    "key": "auto_file",
                    "step_type": "automated",
                    "precondition": "documents_received",
                    "required_documents": ["challan"],
                },
                {"key": "confirm", "step_type": "ops_task", "depends_on": ["auto_file"]},
            ],
        )

        run = workflow_executor.start_run(db_session, instance.id, now=NOW)

        steps = _steps(run)
        assert steps["auto_file"].status == StepStatus.skipped
        assert workflow_executor.frontier(run) == ["confirm"]


class TestStartStep:
    def test_claims_ready_step(self, db_session, instance, filing_template) -> None:
        run = workflow_executor.start_run(db_session, instance.id, now=NOW)
        _receive(db_session, instance)
        workflow_executor.refresh_client_steps(db_session, run, NOW)

        step = workflow_executor.start_step(db_session, run.id, "prepare", "alice", now=NOW)

        assert step.status == StepStatus.in_progress
        assert step.assignee_id == "alice"
        item = db_session.scalars(select(QueueItem)).one()
        assert item.status == QueueItemStatus.in_progress
        again = workflow_executor.start_step(db_session, run.id, "prepare", "alice", now=NOW)
        assert again is step

    def test_blocked_step_cannot_start(self, db_session, instance, filing_template) -> None:
        run = workflow_executor.start_run(db_session, instance.id, now=NOW)
        with pytest.raises(HTTPException) as exc:
            workflow_executor.start_step(db_session, run.id, "review", "alice", now=NOW)
        assert exc.value.status_code == 409


class TestSla:
    def test_unstarted_step_past_sla_is_stalled(
        self, db_session, instance, filing_template
    ) -> None:
        run = workflow_executor.start_run(db_session, instance.id, now=NOW)
        late = NOW + timedelta(days=3)

        assert [s.step_key for s in stalled_steps(run, late)] == ["collect"]
        state = compute_entity_state(db_session, instance.entity_id, late)
        assessment = state.domains[0].instances[0]
        assert assessment.workflow_stalled is True
        assert assessment.state == "RED"

    def test_started_step_past_sla_is_lagging(
        self, db_session, instance, filing_template
    ) -> None:
        run = workflow_executor.start_run(db_session, instance.id, now=NOW)
        _receive(db_session, instance)
        workflow_executor.refresh_client_steps(db_session, run, NOW)
        workflow_executor.start_step(db_session, run.id, "prepare", "alice", now=NOW)
        late = NOW + timedelta(days=3)

        assert stalled_steps(run, late) == []
        assert [s.step_key for s in lagging_steps(run, late)] == ["prepare"]

    def test_stall_reported_once_per_window(
        self, db_session, instance, filing_template
    ) -> None:
        workflow_executor.start_run(db_session, instance.id, now=NOW)
        late = NOW + timedelta(days=3)

        first = scheduler.sweep_stalled_steps(db_session, instance.entity_id, late)
        second = scheduler.sweep_stalled_steps(
            db_session, instance.entity_id, late + timedelta(hours=1)
        )

        assert [e.event_type for e in first] == ["workflow.step_stalled"]
        assert second == []
