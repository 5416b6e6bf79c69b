from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.db import SessionLocal
from app.schemas.common import ListResponse
from app.schemas.compliance import (
    ObligationDefinitionCreate,
    ObligationDefinitionRead,
    ObligationDefinitionUpdate,
    ObligationInstanceRead,
    ObligationTransitionRead,
    ObligationTransitionRequest,
)
from app.schemas.workflow import WorkflowRunRead
from app.services import orchestrator, workflow_executor
from app.services.obligations import obligation_definitions, obligation_instances

router = APIRouter(tags=["obligations"])


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


@router.post(
    "/obligation-definitions",
    response_model=ObligationDefinitionRead,
    status_code=status.HTTP_201_CREATED,
)
def create_definition(payload: ObligationDefinitionCreate, db: Session = Depends(get_db)):
    return obligation_definitions.create(db, payload)


@router.get(
    "/obligation-definitions", response_model=ListResponse[ObligationDefinitionRead]
)
def list_definitions(
    domain: str | None = None,
    is_active: bool | None = None,
    order_by: str = Query(default="code"),
    order_dir: str = Query(default="asc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return obligation_definitions.list_response(
        db, domain, is_active, order_by, order_dir, limit, offset
    )


@router.get(
    "/obligation-definitions/{definition_id}", response_model=ObligationDefinitionRead
)
def get_definition(definition_id: str, db: Session = Depends(get_db)):
    return obligation_definitions.get(db, definition_id)


@router.patch(
    "/obligation-definitions/{definition_id}", response_model=ObligationDefinitionRead
)
def update_definition(
    definition_id: str,
    payload: ObligationDefinitionUpdate,
    db: Session = Depends(get_db),
):
    return obligation_definitions.update(db, definition_id, payload)


@router.delete(
    "/obligation-definitions/{definition_id}", status_code=status.HTTP_204_NO_CONTENT
)
def deactivate_definition(definition_id: str, db: Session = Depends(get_db)):
    obligation_definitions.deactivate(db, definition_id)


# ---------------------------------------------------------------------------
# Instances
# ---------------------------------------------------------------------------


@router.get(
    "/obligation-instances", response_model=ListResponse[ObligationInstanceRead]
)
def list_instances(
    entity_id: str | None = None,
    status: str | None = None,
    obligation_code: str | None = None,
    order_by: str = Query(default="due_date"),
    order_dir: str = Query(default="asc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return obligation_instances.list_response(
        db, entity_id, status, obligation_code, order_by, order_dir, limit, offset
    )


@router.get("/obligation-instances/{instance_id}", response_model=ObligationInstanceRead)
def get_instance(instance_id: str, db: Session = Depends(get_db)):
    return obligation_instances.get(db, instance_id)


@router.post(
    "/obligation-instances/{instance_id}/transitions",
    response_model=ObligationInstanceRead,
)
def transition_instance(
    instance_id: str,
    payload: ObligationTransitionRequest,
    db: Session = Depends(get_db),
):
    return orchestrator.transition_instance(
        db, instance_id, payload.status, actor_id=payload.actor_id, reason=payload.reason
    )


@router.get(
    "/obligation-instances/{instance_id}/transitions",
    response_model=list[ObligationTransitionRead],
)
def list_transitions(instance_id: str, db: Session = Depends(get_db)):
    return obligation_instances.transitions(db, instance_id)


@router.post(
    "/obligation-instances/{instance_id}/workflow",
    response_model=WorkflowRunRead,
    status_code=status.HTTP_201_CREATED,
)
def start_workflow(
    instance_id: str,
    template_key: str | None = None,
    actor_id: str | None = None,
    db: Session = Depends(get_db),
):
    run = orchestrator.start_workflow(
        db, instance_id, template_key=template_key, actor_id=actor_id
    )
    return workflow_executor.run_view(run)
