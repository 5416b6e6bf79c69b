from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import SessionLocal
from app.schemas.notification import AcknowledgeRequest, NotificationEventRead
from app.services import dispatcher, orchestrator

router = APIRouter(prefix="/alerts", tags=["alerts"])


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@router.get("/{event_id}", response_model=NotificationEventRead)
def get_alert(event_id: str, db: Session = Depends(get_db)):
    return dispatcher.alert_view(dispatcher.get_event(db, event_id))


@router.post("/{event_id}/acknowledge", response_model=NotificationEventRead)
def acknowledge_alert(
    event_id: str, payload: AcknowledgeRequest, db: Session = Depends(get_db)
):
    event = orchestrator.acknowledge_alert(db, event_id, payload.actor_id)
    return dispatcher.alert_view(event)
