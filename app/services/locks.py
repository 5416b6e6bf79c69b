"""Per-entity serialization.

Writers for one entity take an in-process lock and then a row lock on the
entity (``SELECT ... FOR UPDATE``). The row lock serializes workers in other
processes on PostgreSQL; SQLite ignores it.
"""

import logging
import threading
import uuid
import weakref
from contextlib import contextmanager

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.compliance import Entity
from app.services.common import coerce_uuid

logger = logging.getLogger(__name__)

_registry_guard = threading.Lock()
# Entries vanish once no caller holds a reference to the lock.
_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()


class EntityLockTimeout(Exception):
    def __init__(self, entity_id, timeout: float):
        self.entity_id = entity_id
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for entity {entity_id}")


class _EntityLock:
    def __init__(self):
        self._lock = threading.RLock()

    def acquire(self, timeout: float = -1) -> bool:
        return self._lock.acquire(timeout=timeout)

    def release(self) -> None:
        self._lock.release()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info):
        self._lock.release()


def _lock_for(entity_id: uuid.UUID) -> _EntityLock:
    with _registry_guard:
        lock = _locks.get(entity_id)
        if lock is None:
            lock = _EntityLock()
            _locks[entity_id] = lock
        return lock


@contextmanager
def entity_lock(db: Session, entity_id, timeout: float | None = None):
    entity_uuid = coerce_uuid(entity_id)
    timeout = settings.entity_lock_timeout_seconds if timeout is None else timeout
    lock = _lock_for(entity_uuid)
    if not lock.acquire(timeout=timeout):
        logger.warning("Entity lock timeout for %s after %ss", entity_uuid, timeout)
        raise EntityLockTimeout(entity_uuid, timeout)
    try:
        entity = db.scalars(
            select(Entity).where(Entity.id == entity_uuid).with_for_update()
        ).first()
        if entity is None:
            raise HTTPException(status_code=404, detail="Entity not found")
        yield entity
    finally:
        lock.release()
