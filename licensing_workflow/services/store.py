# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Entity store contract and an in-process implementation.

Every status-bearing write goes through save()/save_all() with the revision the
caller observed; a mismatch means someone else won the read-modify-write race.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple, Type

from ..domain.errors import ConcurrentModification, InvalidTransition, NotFound
from ..models.base import BaseEntity
from ..models.entities import (
    AuditReport,
    AuditReportVersion,
    DeadlineReminder,
    LicenseRequest,
    ServiceFlowLog,
    User,
)
from ..models.enums import EntityType

logger = logging.getLogger(__name__)

# (entity type, entity id, expected revision or None)
DeleteTarget = Tuple[EntityType, str, Optional[int]]


ENTITY_CLASSES: Dict[EntityType, Type[BaseEntity]] = {
    EntityType.LICENSE_REQUEST: LicenseRequest,
    EntityType.AUDIT_REPORT: AuditReport,
    EntityType.AUDIT_REPORT_VERSION: AuditReportVersion,
    EntityType.DEADLINE_REMINDER: DeadlineReminder,
    EntityType.USER: User,
    EntityType.SERVICE_FLOW_LOG: ServiceFlowLog,
}

_TYPES_BY_CLASS = {cls: entity_type for entity_type, cls in ENTITY_CLASSES.items()}


def entity_type_of(entity: BaseEntity) -> EntityType:
    """Map an entity instance to its EntityType."""
    try:
        return _TYPES_BY_CLASS[type(entity)]
    except KeyError:
        raise TypeError(f"Unsupported entity class: {type(entity).__name__}") from None


def check_deadline_unchanged(stored: BaseEntity, entity: BaseEntity) -> None:
    """Refuse to persist a request whose deadline differs from the stored one."""
    if isinstance(stored, LicenseRequest) and stored.deadline is not None:
        if entity.deadline != stored.deadline:
            raise InvalidTransition(
                f"Deadline of license request {entity.id} is immutable",
                entity_id=entity.id,
            )


class EntityStore:
    """
    Durable storage contract used by the workflow core.

    Implementations must make save(), save_all(), delete_all(), flag_overdue()
    and claim_reminder() atomic with respect to each other.
    """

    def get(self, entity_type: EntityType, entity_id: str) -> BaseEntity:
        """Return a detached copy of an entity, raising NotFound if unknown."""
        raise NotImplementedError

    def insert(self, entity: BaseEntity) -> BaseEntity:
        """Persist a new entity. Unique-key clashes raise ConcurrentModification."""
        raise NotImplementedError

    def save(self, entity: BaseEntity) -> BaseEntity:
        """Overwrite an entity if its stored revision equals entity.revision."""
        raise NotImplementedError

    def save_all(self, entities: Iterable[BaseEntity]) -> List[BaseEntity]:
        """Insert or overwrite several entities in one atomic unit."""
        raise NotImplementedError

    def delete(self, entity_type: EntityType, entity_id: str, expected_revision: Optional[int] = None) -> None:
        raise NotImplementedError

    def delete_all(self, targets: Iterable[DeleteTarget]) -> None:
        """Delete several entities in one atomic unit; nothing is deleted if any check fails."""
        raise NotImplementedError

    def find(self, entity_type: EntityType, **filters) -> List[BaseEntity]:
        """Equality-filtered listing."""
        raise NotImplementedError

    def count(self, entity_type: EntityType, **filters) -> int:
        return len(self.find(entity_type, **filters))

    def find_overdue(self, now: datetime) -> List[LicenseRequest]:
        """Non-terminal requests past deadline that are not flagged yet."""
        raise NotImplementedError

    def find_due_reminders(self, now: datetime) -> List[DeadlineReminder]:
        """Unfired reminders with deadline - reminder_days <= now < deadline."""
        raise NotImplementedError

    def flag_overdue(self, request_id: str, now: datetime) -> bool:
        """Set the overdue flag if not set. Returns True only for the caller that set it."""
        raise NotImplementedError

    def claim_reminder(self, reminder_id: str, now: datetime) -> bool:
        """Set fired_at if still null. Returns True only for the caller that set it."""
        raise NotImplementedError

    def list_versions(self, report_id: str) -> List[AuditReportVersion]:
        """Versions of a report ordered by version number."""
        versions = self.find(EntityType.AUDIT_REPORT_VERSION, report_id=report_id)
        return sorted(versions, key=lambda v: v.version_number)

    def max_version_number(self, report_id: str) -> int:
        """Highest version number stored for a report, 0 if none."""
        versions = self.find(EntityType.AUDIT_REPORT_VERSION, report_id=report_id)
        return max((v.version_number for v in versions), default=0)

    def health_check(self) -> Dict[str, str]:
        return {'status': 'healthy', 'backend': type(self).__name__}


class InMemoryEntityStore(EntityStore):
    """Thread-safe dictionary-backed store for local runs and tests."""

    def __init__(self):
        self._lock = threading.RLock()
        self._data: Dict[EntityType, Dict[str, BaseEntity]] = {t: {} for t in ENTITY_CLASSES}

    def _bucket(self, entity_type: EntityType) -> Dict[str, BaseEntity]:
        return self._data[EntityType(entity_type)]

    def get(self, entity_type: EntityType, entity_id: str) -> BaseEntity:
        with self._lock:
            entity = self._bucket(entity_type).get(entity_id)
            if entity is None:
                raise NotFound(
                    f"{EntityType(entity_type).value} {entity_id} not found",
                    entity_type=EntityType(entity_type).value,
                    entity_id=entity_id,
                )
            return entity.model_copy(deep=True)

    def _check_unique(self, entity: BaseEntity) -> None:
        if isinstance(entity, AuditReportVersion):
            for other in self._bucket(EntityType.AUDIT_REPORT_VERSION).values():
                if (other.id != entity.id and other.report_id == entity.report_id
                        and other.version_number == entity.version_number):
                    raise ConcurrentModification(
                        f"Version {entity.version_number} of report {entity.report_id} already exists",
                        report_id=entity.report_id,
                        version_number=entity.version_number,
                    )

    def _check_revision(self, entity: BaseEntity) -> None:
        bucket = self._bucket(entity_type_of(entity))
        stored = bucket.get(entity.id)
        if stored is None:
            if entity.revision != 0:
                raise NotFound(
                    f"{entity_type_of(entity).value} {entity.id} not found",
                    entity_id=entity.id,
                )
            self._check_unique(entity)
            return
        if stored.revision != entity.revision:
            raise ConcurrentModification(
                f"{entity_type_of(entity).value} {entity.id} was modified concurrently "
                f"(expected revision {entity.revision}, found {stored.revision})",
                entity_id=entity.id,
                expected_revision=entity.revision,
                actual_revision=stored.revision,
            )
        check_deadline_unchanged(stored, entity)

    def _write(self, entity: BaseEntity) -> BaseEntity:
        entity.revision = entity.revision + 1
        self._bucket(entity_type_of(entity))[entity.id] = entity.model_copy(deep=True)
        return entity

    def insert(self, entity: BaseEntity) -> BaseEntity:
        with self._lock:
            if entity.id in self._bucket(entity_type_of(entity)):
                raise ConcurrentModification(
                    f"{entity_type_of(entity).value} {entity.id} already exists",
                    entity_id=entity.id,
                )
            entity.revision = 0
            self._check_unique(entity)
            return self._write(entity)

    def save(self, entity: BaseEntity) -> BaseEntity:
        with self._lock:
            self._check_revision(entity)
            return self._write(entity)

    def save_all(self, entities: Iterable[BaseEntity]) -> List[BaseEntity]:
        entities = list(entities)
        with self._lock:
            for entity in entities:
                self._check_revision(entity)
            return [self._write(entity) for entity in entities]

    def _check_delete(self, entity_type: EntityType, entity_id: str, expected_revision: Optional[int]) -> None:
        stored = self._bucket(entity_type).get(entity_id)
        if stored is None:
            raise NotFound(f"{EntityType(entity_type).value} {entity_id} not found", entity_id=entity_id)
        if expected_revision is not None and stored.revision != expected_revision:
            raise ConcurrentModification(
                f"{EntityType(entity_type).value} {entity_id} was modified concurrently",
                entity_id=entity_id,
            )

    def delete(self, entity_type: EntityType, entity_id: str, expected_revision: Optional[int] = None) -> None:
        self.delete_all([(entity_type, entity_id, expected_revision)])

    def delete_all(self, targets: Iterable[DeleteTarget]) -> None:
        targets = list(targets)
        with self._lock:
            for entity_type, entity_id, expected_revision in targets:
                self._check_delete(entity_type, entity_id, expected_revision)
            for entity_type, entity_id, _ in targets:
                del self._bucket(entity_type)[entity_id]
                logger.warning(f"Hard deleted {EntityType(entity_type).value} {entity_id}")

    def find(self, entity_type: EntityType, **filters) -> List[BaseEntity]:
        with self._lock:
            return [
                entity.model_copy(deep=True)
                for entity in self._bucket(entity_type).values()
                if all(getattr(entity, key) == value for key, value in filters.items())
            ]

    def find_overdue(self, now: datetime) -> List[LicenseRequest]:
        with self._lock:
            return [
                request.model_copy(deep=True)
                for request in self._bucket(EntityType.LICENSE_REQUEST).values()
                if not request.is_terminal()
                and not request.is_overdue
                and request.is_deadline_passed(now)
            ]

    def find_due_reminders(self, now: datetime) -> List[DeadlineReminder]:
        with self._lock:
            return sorted(
                (
                    reminder.model_copy(deep=True)
                    for reminder in self._bucket(EntityType.DEADLINE_REMINDER).values()
                    if reminder.is_due(now)
                ),
                key=lambda r: r.deadline_date,
            )

    def flag_overdue(self, request_id: str, now: datetime) -> bool:
        with self._lock:
            request = self._bucket(EntityType.LICENSE_REQUEST).get(request_id)
            if request is None:
                raise NotFound(f"license_request {request_id} not found", entity_id=request_id)
            if request.is_overdue:
                return False
            request.is_overdue = True
            request.overdue_at = now
            request.revision = request.revision + 1
            return True

    def claim_reminder(self, reminder_id: str, now: datetime) -> bool:
        with self._lock:
            reminder = self._bucket(EntityType.DEADLINE_REMINDER).get(reminder_id)
            if reminder is None:
                raise NotFound(f"deadline_reminder {reminder_id} not found", entity_id=reminder_id)
            if reminder.fired_at is not None:
                return False
            reminder.fired_at = now
            reminder.revision = reminder.revision + 1
            return True
