import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.notification import AlertPreference
from app.schemas.preferences import AlertPreferenceSnapshot, AlertPreferenceUpdate
from app.services.common import coerce_uuid

logger = logging.getLogger(__name__)


def _row(db: Session, entity_id, contact_id: str | None) -> AlertPreference | None:
    query = select(AlertPreference).where(
        AlertPreference.entity_id == coerce_uuid(entity_id)
    )
    if contact_id is None:
        query = query.where(AlertPreference.contact_id.is_(None))
    else:
        query = query.where(AlertPreference.contact_id == contact_id)
    return db.scalars(query).first()


def snapshot_for(
    db: Session, entity_id, contact_id: str | None = None
) -> AlertPreferenceSnapshot:
    """Immutable preferences for a contact, falling back to the entity's, then defaults."""
    row = None
    if contact_id is not None:
        row = _row(db, entity_id, contact_id)
    if row is None:
        row = _row(db, entity_id, None)
    if row is None:
        return AlertPreferenceSnapshot()
    return AlertPreferenceSnapshot.model_validate(row.preferences)


class AlertPreferences:
    @staticmethod
    def get(db: Session, entity_id, contact_id: str | None = None) -> dict:
        row = _row(db, entity_id, contact_id)
        return {
            "entity_id": coerce_uuid(entity_id),
            "contact_id": contact_id,
            "version": row.version if row else 0,
            "preferences": snapshot_for(db, entity_id, contact_id),
        }

    @staticmethod
    def update(db: Session, entity_id, payload: AlertPreferenceUpdate) -> AlertPreference:
        """Replace the stored snapshot and bump its version. No commit."""
        row = _row(db, entity_id, payload.contact_id)
        data = payload.preferences.model_dump(mode="json")
        if row is None:
            row = AlertPreference(
                entity_id=coerce_uuid(entity_id),
                contact_id=payload.contact_id,
                preferences=data,
                version=1,
                updated_by=payload.updated_by,
            )
            db.add(row)
        else:
            row.preferences = data
            row.version = (row.version or 0) + 1
            row.updated_by = payload.updated_by
        db.flush()
        logger.info(
            "Alert preferences for entity %s now at version %s",
            entity_id,
            row.version,
            extra={"contact_id": payload.contact_id},
        )
        return row


alert_preferences = AlertPreferences()
