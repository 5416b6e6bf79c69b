import os
import uuid
from datetime import date, datetime, timezone
from functools import partial
from types import SimpleNamespace
from unittest.mock import patch

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "true")
os.environ.setdefault("LOG_JSON", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event

from app.api import alerts as alerts_api
from app.api import entities as entities_api
from app.api import obligations as obligations_api
from app.api import queues as queues_api
from app.api import scheduler as scheduler_api
from app.api import workflows as workflows_api
from app.db import Base, SessionLocal, engine
from app.main import app
from app.models.compliance import (
    Domain,
    Entity,
    ObligationDefinition,
    ObligationInstance,
    ObligationStatus,
    Periodicity,
    PriorityLevel,
)
from app.schemas.workflow import WorkflowStepSpec, WorkflowTemplateCreate
from app.services.workflow_executor import workflow_templates


# pysqlite defers BEGIN until the first write, which breaks SAVEPOINT.
@event.listens_for(engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


Base.metadata.create_all(engine)

NOW = datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        with engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())


@pytest.fixture(autouse=True)
def celery_calls():
    """Keep queued work in-process; tests drive the inner helpers directly."""
    with patch(
        "app.tasks.notifications.dispatch_notification_event.delay"
    ) as dispatch_delay, patch(
        "app.tasks.notifications.deliver_send_request.delay"
    ) as deliver_delay, patch(
        "app.tasks.events.process_trigger.apply_async"
    ) as trigger_async, patch(
        "app.tasks.scheduler.tick_entity.apply_async"
    ) as tick_async:
        yield {
            "dispatch": dispatch_delay,
            "deliver": deliver_delay,
            "trigger": trigger_async,
            "tick": tick_async,
        }


@pytest.fixture()
def client(db_session):
    def _get_db():
        yield db_session

    for module in (alerts_api, entities_api, obligations_api, queues_api, scheduler_api, workflows_api):
        app.dependency_overrides[module.get_db] = _get_db
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


def make_entity(db, **overrides) -> Entity:
    data = {
        "name": f"Acme {uuid.uuid4().hex[:6]}",
        "entity_type": "private_limited",
        "timezone": "UTC",
        "primary_contact_email": "owner@acme.example",
        "primary_contact_phone": "+911234567890",
        "onboarded_on": date(2025, 4, 1),
    }
    data.update(overrides)
    entity = Entity(**data)
    db.add(entity)
    db.commit()
    db.refresh(entity)
    return entity


def make_definition(db, **overrides) -> ObligationDefinition:
    data = {
        "code": f"GSTR3B-{uuid.uuid4().hex[:4]}",
        "version": 1,
        "name": "GSTR-3B",
        "domain": Domain.TAX_GST,
        "periodicity": Periodicity.monthly,
        "base_sla_days": 5,
        "due_offset_days": 20,
        "penalty_formula": {"type": "per_day", "per_day": "50", "max": "5000"},
        "priority": PriorityLevel.high,
        "applicable_entity_types": [],
        "is_active": True,
    }
    data.update(overrides)
    definition = ObligationDefinition(**data)
    db.add(definition)
    db.commit()
    db.refresh(definition)
    return definition


def make_instance(db, entity, definition, due_date: date, **overrides) -> ObligationInstance:
    data = {
        "entity_id": entity.id,
        "definition_id": definition.id,
        "obligation_code": definition.code,
        "period_key": due_date.strftime("%Y-%m") + f"-{uuid.uuid4().hex[:4]}",
        "period_label": due_date.strftime("%b %Y"),
        "period_start": due_date.replace(day=1),
        "period_end": due_date,
        "due_date": due_date,
        "status": ObligationStatus.pending,
    }
    data.update(overrides)
    instance = ObligationInstance(**data)
    db.add(instance)
    db.commit()
    db.refresh(instance)
    return instance


def make_template(db, key: str, steps: list[dict]):
    payload = WorkflowTemplateCreate(
        key=key,
        name=f"{key} workflow",
        steps=[WorkflowStepSpec(**step) for step in steps],
    )
    return workflow_templates.create(db, payload)


@pytest.fixture()
def entity(db_session):
    return make_entity(db_session)


@pytest.fixture()
def definition(db_session):
    return make_definition(db_session)


@pytest.fixture()
def filing_template(db_session):
    """collect (client) -> prepare (ops) -> review (qa) -> file (automated)."""
    return make_template(
        db_session,
        "default",
        [
            {
                "key": "collect",
                "step_type": "client_task",
                "required_documents": ["bank_statement"],
            },
            {"key": "prepare", "step_type": "ops_task", "depends_on": ["collect"]},
            {"key": "review", "step_type": "qa_review", "depends_on": ["prepare"]},
            {
                "key": "file",
                "step_type": "automated",
                "depends_on": ["review"],
                "action": "notify_entity",
            },
        ],
    )


@pytest.fixture()
def factories(db_session):
    return SimpleNamespace(
        entity=partial(make_entity, db_session),
        definition=partial(make_definition, db_session),
        instance=partial(make_instance, db_session),
        template=partial(make_template, db_session),
    )
