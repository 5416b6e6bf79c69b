from __future__ import annotations

import logging
from datetime import date

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.compliance import (
    OPEN_OBLIGATION_STATUSES,
    Domain,
    Entity,
    ObligationDefinition,
    ObligationDocument,
    ObligationInstance,
    ObligationStatus,
    ObligationStatusTransition,
)
from app.schemas.compliance import (
    EntityCreate,
    EntityUpdate,
    ObligationDefinitionCreate,
    ObligationDefinitionUpdate,
)
from app.services.common import apply_ordering, apply_pagination, coerce_uuid, utcnow
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

# Completed and cancelled are terminal; an instance is superseded, never deleted.
ALLOWED_TRANSITIONS: dict[ObligationStatus, set[ObligationStatus]] = {
    ObligationStatus.pending: {
        ObligationStatus.in_progress,
        ObligationStatus.overdue,
        ObligationStatus.completed,
        ObligationStatus.cancelled,
    },
    ObligationStatus.in_progress: {
        ObligationStatus.overdue,
        ObligationStatus.completed,
        ObligationStatus.cancelled,
    },
    ObligationStatus.overdue: {
        ObligationStatus.in_progress,
        ObligationStatus.completed,
        ObligationStatus.cancelled,
    },
    ObligationStatus.completed: set(),
    ObligationStatus.cancelled: set(),
}


def _validate_enum(enum_cls, value, field: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {field}: {value}")


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


class Entities(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: EntityCreate) -> Entity:
        entity = Entity(**payload.model_dump())
        db.add(entity)
        db.commit()
        db.refresh(entity)
        logger.info("Created entity %s", entity.id)
        return entity

    @staticmethod
    def get(db: Session, entity_id: str) -> Entity:
        entity = db.get(Entity, coerce_uuid(entity_id))
        if not entity:
            raise HTTPException(status_code=404, detail="Entity not found")
        return entity

    @staticmethod
    def list(
        db: Session,
        entity_type: str | None,
        include_archived: bool,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[Entity]:
        query = db.query(Entity)
        if entity_type is not None:
            query = query.filter(Entity.entity_type == entity_type)
        if not include_archived:
            query = query.filter(Entity.is_archived.is_(False))
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"name": Entity.name, "created_at": Entity.created_at},
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def update(db: Session, entity_id: str, payload: EntityUpdate) -> Entity:
        entity = Entities.get(db, entity_id)
        for key, value in payload.model_dump(exclude_unset=True).items():
            setattr(entity, key, value)
        db.commit()
        db.refresh(entity)
        logger.info("Updated entity %s", entity.id)
        return entity

    @staticmethod
    def archive(db: Session, entity_id: str) -> Entity:
        entity = Entities.get(db, entity_id)
        if not entity.is_archived:
            entity.is_archived = True
            entity.archived_at = utcnow()
            db.commit()
            db.refresh(entity)
            logger.info("Archived entity %s", entity.id)
        return entity


# ---------------------------------------------------------------------------
# Obligation definitions
# ---------------------------------------------------------------------------


def _definition_data(payload) -> dict:
    data = payload.model_dump(exclude_unset=True)
    if "penalty_formula" in data and payload.penalty_formula is not None:
        data["penalty_formula"] = payload.penalty_formula.model_dump(
            mode="json", exclude_none=True
        )
    return data


class ObligationDefinitions(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: ObligationDefinitionCreate) -> ObligationDefinition:
        existing = db.scalars(
            select(ObligationDefinition).where(ObligationDefinition.code == payload.code)
        ).first()
        if existing:
            raise HTTPException(
                status_code=409, detail=f"Obligation code already exists: {payload.code}"
            )
        data = _definition_data(payload)
        data.setdefault("applicable_entity_types", [])
        definition = ObligationDefinition(version=1, **data)
        db.add(definition)
        db.commit()
        db.refresh(definition)
        logger.info("Created obligation definition %s v1", definition.code)
        return definition

    @staticmethod
    def get(db: Session, definition_id: str) -> ObligationDefinition:
        definition = db.get(ObligationDefinition, coerce_uuid(definition_id))
        if not definition:
            raise HTTPException(status_code=404, detail="Obligation definition not found")
        return definition

    @staticmethod
    def list(
        db: Session,
        domain: str | None,
        is_active: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[ObligationDefinition]:
        query = db.query(ObligationDefinition)
        if domain is not None:
            query = query.filter(
                ObligationDefinition.domain == _validate_enum(Domain, domain, "domain")
            )
        if is_active is None:
            query = query.filter(ObligationDefinition.is_active.is_(True))
        else:
            query = query.filter(ObligationDefinition.is_active == is_active)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "code": ObligationDefinition.code,
                "created_at": ObligationDefinition.created_at,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def update(
        db: Session, definition_id: str, payload: ObligationDefinitionUpdate
    ) -> ObligationDefinition:
        """Apply changes, creating a new version once instances reference it."""
        definition = ObligationDefinitions.get(db, definition_id)
        if not definition.is_active:
            raise HTTPException(
                status_code=409, detail="Only the active version can be updated"
            )
        changes = _definition_data(payload)
        referenced = db.scalars(
            select(ObligationInstance.id)
            .where(ObligationInstance.definition_id == definition.id)
            .limit(1)
        ).first()
        if referenced is None:
            for key, value in changes.items():
                setattr(definition, key, value)
            db.commit()
            db.refresh(definition)
            logger.info("Updated obligation definition %s in place", definition.code)
            return definition

        carried = {
            column: getattr(definition, column)
            for column in (
                "code",
                "name",
                "description",
                "domain",
                "periodicity",
                "base_sla_days",
                "due_offset_days",
                "penalty_formula",
                "priority",
                "risk_window_days",
                "applicable_entity_types",
                "effective_from",
                "effective_until",
            )
        }
        carried.update(changes)
        successor = ObligationDefinition(
            version=definition.version + 1,
            supersedes_id=definition.id,
            is_active=True,
            **carried,
        )
        definition.is_active = False
        db.add(successor)
        db.commit()
        db.refresh(successor)
        logger.info(
            "Superseded obligation definition %s v%s with v%s",
            successor.code,
            definition.version,
            successor.version,
        )
        return successor

    @staticmethod
    def deactivate(db: Session, definition_id: str) -> None:
        definition = ObligationDefinitions.get(db, definition_id)
        definition.is_active = False
        db.commit()
        logger.info("Deactivated obligation definition %s", definition_id)


def active_definitions(db: Session) -> list[ObligationDefinition]:
    return list(
        db.scalars(
            select(ObligationDefinition)
            .where(ObligationDefinition.is_active.is_(True))
            .order_by(ObligationDefinition.code)
        )
    )


def definition_applies(
    definition: ObligationDefinition, entity: Entity, on: date | None = None
) -> bool:
    types = definition.applicable_entity_types or []
    if types and entity.entity_type not in types:
        return False
    if on is not None and definition.effective_until and on > definition.effective_until:
        return False
    return True


# ---------------------------------------------------------------------------
# Obligation instances
# ---------------------------------------------------------------------------


def record_transition(
    db: Session,
    instance: ObligationInstance,
    to_status: ObligationStatus,
    actor_id: str | None = None,
    reason: str | None = None,
) -> ObligationStatusTransition:
    """Move an instance to a new status and append the history row. No commit."""
    from_status = instance.status
    if to_status not in ALLOWED_TRANSITIONS.get(from_status, set()):
        raise HTTPException(
            status_code=409,
            detail=f"Cannot move obligation from {from_status.value} to {to_status.value}",
        )
    instance.status = to_status
    if to_status == ObligationStatus.completed:
        instance.completed_at = utcnow()
    transition = ObligationStatusTransition(
        instance_id=instance.id,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        reason=reason,
    )
    db.add(transition)
    logger.info(
        "Obligation %s %s -> %s",
        instance.id,
        from_status.value,
        to_status.value,
        extra={"entity_id": str(instance.entity_id), "actor_id": actor_id},
    )
    return transition


def open_instances(db: Session, entity_id) -> list[ObligationInstance]:
    return list(
        db.scalars(
            select(ObligationInstance)
            .where(
                ObligationInstance.entity_id == coerce_uuid(entity_id),
                ObligationInstance.status.in_(OPEN_OBLIGATION_STATUSES),
            )
            .order_by(ObligationInstance.due_date, ObligationInstance.id)
        )
    )


class ObligationInstances(ListResponseMixin):
    @staticmethod
    def get(db: Session, instance_id: str) -> ObligationInstance:
        instance = db.get(ObligationInstance, coerce_uuid(instance_id))
        if not instance:
            raise HTTPException(status_code=404, detail="Obligation instance not found")
        return instance

    @staticmethod
    def list(
        db: Session,
        entity_id: str | None,
        status: str | None,
        obligation_code: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[ObligationInstance]:
        query = db.query(ObligationInstance)
        if entity_id is not None:
            query = query.filter(ObligationInstance.entity_id == coerce_uuid(entity_id))
        if status is not None:
            query = query.filter(
                ObligationInstance.status
                == _validate_enum(ObligationStatus, status, "status")
            )
        if obligation_code is not None:
            query = query.filter(ObligationInstance.obligation_code == obligation_code)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "due_date": ObligationInstance.due_date,
                "created_at": ObligationInstance.created_at,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def transitions(db: Session, instance_id: str) -> list[ObligationStatusTransition]:
        instance = ObligationInstances.get(db, instance_id)
        return list(instance.transitions)

    @staticmethod
    def documents(db: Session, instance_id: str) -> list[ObligationDocument]:
        instance = ObligationInstances.get(db, instance_id)
        return sorted(instance.documents, key=lambda doc: (doc.received_at, str(doc.id)))


entities = Entities()
obligation_definitions = ObligationDefinitions()
obligation_instances = ObligationInstances()
