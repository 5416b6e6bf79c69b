from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import SessionLocal
from app.schemas.notification import SchedulerTickRequest, SchedulerTickResponse
from app.services import orchestrator

router = APIRouter(prefix="/scheduler", tags=["scheduler"])


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@router.post("/tick", response_model=SchedulerTickResponse)
def scheduled_tick(payload: SchedulerTickRequest, db: Session = Depends(get_db)):
    """Run the daily roll-forward and per-entity sweeps now."""
    return orchestrator.scheduled_tick(db, payload.as_of)
