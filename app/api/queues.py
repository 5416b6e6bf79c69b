from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.db import SessionLocal
from app.models.workflow import QueueItemStatus
from app.schemas.workflow import (
    AssignmentRead,
    QueueItemRead,
    QueueMemberCreate,
    QueueMemberRead,
)
from app.services import orchestrator, work_queue

router = APIRouter(prefix="/queues", tags=["queues"])


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _assignment(item) -> dict:
    return {
        "item_id": item.id,
        "queue_name": item.queue_name,
        "actor_id": item.assignee_id,
        "step_run_id": item.step_run_id,
    }


@router.get("/{queue_name}/members", response_model=list[QueueMemberRead])
def list_members(queue_name: str, db: Session = Depends(get_db)):
    return work_queue.list_members(db, queue_name)


@router.put(
    "/{queue_name}/members",
    response_model=QueueMemberRead,
    status_code=status.HTTP_200_OK,
)
def add_member(
    queue_name: str, payload: QueueMemberCreate, db: Session = Depends(get_db)
):
    return work_queue.add_member(db, queue_name, payload)


@router.get("/{queue_name}/items", response_model=list[QueueItemRead])
def list_items(
    queue_name: str,
    status: QueueItemStatus | None = None,
    db: Session = Depends(get_db),
):
    return work_queue.list_items(db, queue_name, status)


@router.post("/{queue_name}/assign", response_model=AssignmentRead | None)
def assign_next(queue_name: str, db: Session = Depends(get_db)):
    item = orchestrator.assign_next(db, queue_name)
    return _assignment(item) if item else None


@router.post("/{queue_name}/auto-assign", response_model=list[AssignmentRead])
def auto_assign(queue_name: str, db: Session = Depends(get_db)):
    return [_assignment(item) for item in orchestrator.auto_assign(db, queue_name)]
