from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import requeued
from app.db import SessionLocal
from app.schemas.common import ListResponse
from app.schemas.compliance import (
    DocumentUploadRequest,
    EntityComplianceState,
    EntityCreate,
    EntityRead,
    EntityUpdate,
)
from app.schemas.notification import NotificationEventRead
from app.schemas.preferences import AlertPreferenceRead, AlertPreferenceUpdate
from app.services import orchestrator
from app.services.locks import EntityLockTimeout
from app.services.obligations import entities
from app.services.preferences import alert_preferences

router = APIRouter(prefix="/entities", tags=["entities"])


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@router.post("", response_model=EntityRead, status_code=status.HTTP_201_CREATED)
def create_entity(payload: EntityCreate, db: Session = Depends(get_db)):
    return entities.create(db, payload)


@router.get("", response_model=ListResponse[EntityRead])
def list_entities(
    entity_type: str | None = None,
    include_archived: bool = False,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=25, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return entities.list_response(
        db, entity_type, include_archived, order_by, order_dir, limit, offset
    )


@router.get("/{entity_id}", response_model=EntityRead)
def get_entity(entity_id: str, db: Session = Depends(get_db)):
    return entities.get(db, entity_id)


@router.patch("/{entity_id}", response_model=EntityRead)
def update_entity(entity_id: str, payload: EntityUpdate, db: Session = Depends(get_db)):
    return entities.update(db, entity_id, payload)


@router.delete("/{entity_id}", status_code=status.HTTP_204_NO_CONTENT)
def archive_entity(entity_id: str, db: Session = Depends(get_db)):
    entities.archive(db, entity_id)


@router.get("/{entity_id}/state", response_model=EntityComplianceState)
def get_entity_state(entity_id: str, db: Session = Depends(get_db)):
    return orchestrator.get_entity_state(db, entity_id)


@router.post("/{entity_id}/recalculate", response_model=EntityComplianceState)
def recalculate(entity_id: str, db: Session = Depends(get_db)):
    try:
        return orchestrator.manual_recalculate(db, entity_id)
    except EntityLockTimeout:
        return requeued("manual_recalculate", entity_id=entity_id)


@router.get("/{entity_id}/alerts", response_model=list[NotificationEventRead])
def get_alerts(
    entity_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    return orchestrator.get_alerts(db, entity_id, limit)


@router.get("/{entity_id}/preferences", response_model=AlertPreferenceRead)
def get_preferences(
    entity_id: str, contact_id: str | None = None, db: Session = Depends(get_db)
):
    entities.get(db, entity_id)
    return alert_preferences.get(db, entity_id, contact_id)


@router.put("/{entity_id}/preferences", response_model=AlertPreferenceRead)
def update_preferences(
    entity_id: str, payload: AlertPreferenceUpdate, db: Session = Depends(get_db)
):
    kwargs = {
        "entity_id": entity_id,
        "preferences": payload.preferences.model_dump(mode="json"),
        "contact_id": payload.contact_id,
        "updated_by": payload.updated_by,
    }
    try:
        return orchestrator.preferences_updated(db, **kwargs)
    except EntityLockTimeout:
        return requeued("preferences_updated", **kwargs)


@router.post("/{entity_id}/documents", response_model=EntityComplianceState)
def document_uploaded(
    entity_id: str, payload: DocumentUploadRequest, db: Session = Depends(get_db)
):
    kwargs = {
        "entity_id": entity_id,
        "obligation_instance_id": str(payload.obligation_instance_id),
        "document_type": payload.document_type,
        "document_id": payload.document_id,
        "actor_id": payload.actor_id,
        "metadata": payload.metadata,
    }
    try:
        return orchestrator.document_uploaded(db, **kwargs)
    except EntityLockTimeout:
        return requeued("document_uploaded", **kwargs)
