from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import requeued
from app.db import SessionLocal
from app.schemas.common import ListResponse
from app.schemas.workflow import (
    FrontierResponse,
    StepCompleteRequest,
    StepStartRequest,
    WorkflowRunRead,
    WorkflowStepRunRead,
    WorkflowTemplateCreate,
    WorkflowTemplateRead,
)
from app.services import orchestrator
from app.services.locks import EntityLockTimeout
from app.services.workflow_executor import workflow_templates

router = APIRouter(tags=["workflows"])


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@router.post(
    "/workflow-templates",
    response_model=WorkflowTemplateRead,
    status_code=status.HTTP_201_CREATED,
)
def create_template(payload: WorkflowTemplateCreate, db: Session = Depends(get_db)):
    return workflow_templates.create(db, payload)


@router.get("/workflow-templates", response_model=ListResponse[WorkflowTemplateRead])
def list_templates(
    key: str | None = None,
    is_active: bool | None = None,
    limit: int = Query(default=25, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return workflow_templates.list_response(db, key, is_active, limit, offset)


@router.get("/workflow-templates/{template_id}", response_model=WorkflowTemplateRead)
def get_template(template_id: str, db: Session = Depends(get_db)):
    return workflow_templates.get(db, template_id)


@router.get("/workflow-runs/{run_id}", response_model=WorkflowRunRead)
def get_workflow_run(run_id: str, db: Session = Depends(get_db)):
    return orchestrator.get_workflow_run(db, run_id)


@router.post("/workflow-runs/{run_id}/steps/{step_key}/complete", response_model=FrontierResponse)
def complete_step(
    run_id: str,
    step_key: str,
    payload: StepCompleteRequest,
    db: Session = Depends(get_db),
):
    kwargs = {
        "run_id": run_id,
        "step_key": step_key,
        "actor_id": payload.actor_id,
        "decision": payload.decision,
        "note": payload.note,
    }
    try:
        return orchestrator.step_completed(db, **kwargs)
    except EntityLockTimeout:
        return requeued("step_completed", **kwargs)


@router.post("/workflow-runs/{run_id}/steps/{step_key}/start", response_model=WorkflowStepRunRead)
def start_step(
    run_id: str,
    step_key: str,
    payload: StepStartRequest,
    db: Session = Depends(get_db),
):
    kwargs = {"run_id": run_id, "step_key": step_key, "actor_id": payload.actor_id}
    try:
        return orchestrator.start_step(db, **kwargs)
    except EntityLockTimeout:
        return requeued("start_step", **kwargs)
