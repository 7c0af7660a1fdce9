# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
MongoDB implementation of the entity store with connection pooling.

Documents use camelCase keys. Optimistic concurrency is enforced by filtering
every overwrite on the revision the caller read; multi-entity writes run in a
session transaction, so the deployment must be a replica set.
"""

import os
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pydantic.alias_generators import to_camel, to_snake
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.client_session import ClientSession
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ServerSelectionTimeoutError

from .store import ENTITY_CLASSES, DeleteTarget, EntityStore, check_deadline_unchanged, entity_type_of
from ..domain.errors import ConcurrentModification, NotFound
from ..models.base import BaseEntity
from ..models.entities import TERMINAL_REQUEST_STATUSES, AuditReportVersion, DeadlineReminder, LicenseRequest
from ..models.enums import EntityType

logger = logging.getLogger(__name__)


COLLECTIONS: Dict[EntityType, str] = {
    EntityType.LICENSE_REQUEST: "license_requests",
    EntityType.AUDIT_REPORT: "audit_reports",
    EntityType.AUDIT_REPORT_VERSION: "audit_report_versions",
    EntityType.DEADLINE_REMINDER: "deadline_reminders",
    EntityType.USER: "users",
    EntityType.SERVICE_FLOW_LOG: "service_flow_logs",
}

MS_PER_DAY = 24 * 60 * 60 * 1000


def _object_id(entity_id: str) -> Union[ObjectId, str]:
    """Store ObjectId-shaped ids natively, anything else as plain strings."""
    return ObjectId(entity_id) if ObjectId.is_valid(entity_id) else entity_id


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {to_camel(key): _encode(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        return {to_snake(key): _decode(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_decode(item) for item in value]
    return value


def to_document(entity: BaseEntity, revision: Optional[int] = None) -> Dict[str, Any]:
    """Convert an entity into its stored document."""
    data = entity.model_dump()
    entity_id = data.pop("id")
    if revision is not None:
        data["revision"] = revision
    document = _encode(data)
    document["_id"] = _object_id(entity_id)
    return document


def from_document(entity_type: EntityType, document: Dict[str, Any]) -> BaseEntity:
    """Rebuild an entity from a stored document."""
    document = dict(document)
    entity_id = str(document.pop("_id"))
    data = _decode(document)
    data["id"] = entity_id
    return ENTITY_CLASSES[entity_type].model_validate(data)


def build_filter(filters: Dict[str, Any]) -> Dict[str, Any]:
    """Equality filters on entity attribute names; nested models match field by field."""
    query: Dict[str, Any] = {}
    for key, value in filters.items():
        if isinstance(value, BaseModel):
            for sub_key, sub_value in value.model_dump().items():
                query[f"{to_camel(key)}.{to_camel(sub_key)}"] = _encode(sub_value)
        elif key == "id":
            query["_id"] = _object_id(value)
        else:
            query[to_camel(key)] = _encode(value)
    return query


class MongoEntityStore(EntityStore):
    """MongoDB-backed entity store with connection pooling."""

    def __init__(self, connection_string: str = None, database_name: str = None):
        """Initialize the store; the connection is opened lazily."""
        self.connection_string = connection_string or os.getenv(
            'MONGODB_URI',
            'mongodb://localhost:27017/dede_licensing'
        )
        self.database_name = database_name or os.getenv('MONGODB_DATABASE', 'dede_licensing')
        self._client: Optional[MongoClient] = None
        self._database: Optional[Database] = None

        # Connection pool settings
        self.max_pool_size = int(os.getenv('MONGODB_MAX_POOL_SIZE', '10'))
        self.min_pool_size = int(os.getenv('MONGODB_MIN_POOL_SIZE', '1'))
        self.max_idle_time_ms = int(os.getenv('MONGODB_MAX_IDLE_TIME_MS', '30000'))
        self.server_selection_timeout_ms = int(os.getenv('MONGODB_SERVER_SELECTION_TIMEOUT_MS', '5000'))

        logger.info(f"MongoDB entity store initialized for database: {self.database_name}")

    @property
    def client(self) -> MongoClient:
        """Get MongoDB client with connection pooling."""
        if self._client is None:
            try:
                self._client = MongoClient(
                    self.connection_string,
                    maxPoolSize=self.max_pool_size,
                    minPoolSize=self.min_pool_size,
                    maxIdleTimeMS=self.max_idle_time_ms,
                    serverSelectionTimeoutMS=self.server_selection_timeout_ms,
                    retryWrites=True,
                    retryReads=True,
                    tz_aware=True
                )
                self._client.admin.command('ping')
                logger.info("MongoDB connection established successfully")
            except (ConnectionFailure, ServerSelectionTimeoutError) as e:
                logger.error(f"Failed to connect to MongoDB: {e}")
                raise

        return self._client

    @property
    def database(self) -> Database:
        if self._database is None:
            self._database = self.client[self.database_name]
        return self._database

    def collection(self, entity_type: EntityType) -> Collection:
        return self.database[COLLECTIONS[EntityType(entity_type)]]

    def close_connection(self) -> None:
        """Close MongoDB connection."""
        if self._client:
            self._client.close()
            self._client = None
            self._database = None
            logger.info("MongoDB connection closed")

    def health_check(self) -> Dict[str, Any]:
        """Check MongoDB connection health."""
        try:
            result = self.client.admin.command('ping')
            server_info = self.client.server_info()
            return {
                'status': 'healthy',
                'backend': type(self).__name__,
                'ping': result.get('ok') == 1,
                'version': server_info.get('version'),
                'database': self.database_name,
                'connection_pool_size': self.max_pool_size
            }
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return {
                'status': 'unhealthy',
                'backend': type(self).__name__,
                'error': str(e),
                'database': self.database_name
            }

    # Reads

    def _find_document(self, entity_type: EntityType, entity_id: str,
                       session: Optional[ClientSession] = None) -> Optional[Dict[str, Any]]:
        return self.collection(entity_type).find_one({"_id": _object_id(entity_id)}, session=session)

    def get(self, entity_type: EntityType, entity_id: str) -> BaseEntity:
        document = self._find_document(entity_type, entity_id)
        if document is None:
            raise NotFound(
                f"{EntityType(entity_type).value} {entity_id} not found",
                entity_type=EntityType(entity_type).value,
                entity_id=entity_id,
            )
        return from_document(EntityType(entity_type), document)

    def find(self, entity_type: EntityType, **filters) -> List[BaseEntity]:
        entity_type = EntityType(entity_type)
        cursor = self.collection(entity_type).find(build_filter(filters)).sort("createdAt", ASCENDING)
        return [from_document(entity_type, document) for document in cursor]

    def count(self, entity_type: EntityType, **filters) -> int:
        return self.collection(entity_type).count_documents(build_filter(filters))

    def find_overdue(self, now: datetime) -> List[LicenseRequest]:
        query = {
            "status": {"$nin": [status.value for status in TERMINAL_REQUEST_STATUSES]},
            "isOverdue": False,
            "deadline": {"$lt": now},
        }
        cursor = self.collection(EntityType.LICENSE_REQUEST).find(query).sort("deadline", ASCENDING)
        return [from_document(EntityType.LICENSE_REQUEST, document) for document in cursor]

    def find_due_reminders(self, now: datetime) -> List[DeadlineReminder]:
        query = {
            "firedAt": None,
            "deadlineDate": {"$gt": now},
            "$expr": {
                "$lte": [
                    {"$subtract": ["$deadlineDate", {"$multiply": ["$reminderDays", MS_PER_DAY]}]},
                    now,
                ]
            },
        }
        cursor = self.collection(EntityType.DEADLINE_REMINDER).find(query).sort("deadlineDate", ASCENDING)
        return [from_document(EntityType.DEADLINE_REMINDER, document) for document in cursor]

    def list_versions(self, report_id: str) -> List[AuditReportVersion]:
        cursor = self.collection(EntityType.AUDIT_REPORT_VERSION).find(
            {"reportId": report_id}
        ).sort("versionNumber", ASCENDING)
        return [from_document(EntityType.AUDIT_REPORT_VERSION, document) for document in cursor]

    def max_version_number(self, report_id: str) -> int:
        document = self.collection(EntityType.AUDIT_REPORT_VERSION).find_one(
            {"reportId": report_id},
            projection={"versionNumber": 1},
            sort=[("versionNumber", DESCENDING)],
        )
        return document["versionNumber"] if document else 0

    # Writes

    def insert(self, entity: BaseEntity) -> BaseEntity:
        entity_type = entity_type_of(entity)
        try:
            self.collection(entity_type).insert_one(to_document(entity, revision=1))
        except DuplicateKeyError as e:
            logger.warning(f"Duplicate key inserting {entity_type.value} {entity.id}: {e}")
            raise ConcurrentModification(
                f"{entity_type.value} {entity.id} conflicts with an existing record",
                entity_id=entity.id,
            )
        entity.revision = 1
        logger.debug(f"Inserted {entity_type.value} {entity.id}")
        return entity

    def _write(self, entity: BaseEntity, session: Optional[ClientSession] = None) -> None:
        entity_type = entity_type_of(entity)
        collection = self.collection(entity_type)
        new_revision = entity.revision + 1

        stored = self._find_document(entity_type, entity.id, session=session)
        if stored is None:
            if entity.revision != 0:
                raise NotFound(f"{entity_type.value} {entity.id} not found", entity_id=entity.id)
            try:
                collection.insert_one(to_document(entity, revision=new_revision), session=session)
            except DuplicateKeyError:
                raise ConcurrentModification(
                    f"{entity_type.value} {entity.id} conflicts with an existing record",
                    entity_id=entity.id,
                )
            return

        check_deadline_unchanged(from_document(entity_type, stored), entity)
        try:
            result = collection.replace_one(
                {"_id": _object_id(entity.id), "revision": entity.revision},
                to_document(entity, revision=new_revision),
                session=session,
            )
        except DuplicateKeyError:
            raise ConcurrentModification(
                f"{entity_type.value} {entity.id} conflicts with an existing record",
                entity_id=entity.id,
            )
        if result.matched_count == 0:
            raise ConcurrentModification(
                f"{entity_type.value} {entity.id} was modified concurrently "
                f"(expected revision {entity.revision})",
                entity_id=entity.id,
                expected_revision=entity.revision,
            )

    def save(self, entity: BaseEntity) -> BaseEntity:
        self._write(entity)
        entity.revision = entity.revision + 1
        return entity

    def save_all(self, entities: Iterable[BaseEntity]) -> List[BaseEntity]:
        entities = list(entities)

        def write_all(session: ClientSession) -> None:
            for entity in entities:
                self._write(entity, session=session)

        with self.client.start_session() as session:
            session.with_transaction(write_all)

        for entity in entities:
            entity.revision = entity.revision + 1
        return entities

    def _delete(self, entity_type: EntityType, entity_id: str, expected_revision: Optional[int],
                session: Optional[ClientSession] = None) -> None:
        entity_type = EntityType(entity_type)
        query: Dict[str, Any] = {"_id": _object_id(entity_id)}
        if expected_revision is not None:
            query["revision"] = expected_revision

        result = self.collection(entity_type).delete_one(query, session=session)
        if result.deleted_count == 0:
            if self._find_document(entity_type, entity_id, session=session) is None:
                raise NotFound(f"{entity_type.value} {entity_id} not found", entity_id=entity_id)
            raise ConcurrentModification(
                f"{entity_type.value} {entity_id} was modified concurrently",
                entity_id=entity_id,
            )
        logger.warning(f"Hard deleted {entity_type.value} {entity_id}")

    def delete(self, entity_type: EntityType, entity_id: str, expected_revision: Optional[int] = None) -> None:
        self._delete(entity_type, entity_id, expected_revision)

    def delete_all(self, targets: Iterable[DeleteTarget]) -> None:
        targets = list(targets)

        def delete_each(session: ClientSession) -> None:
            for entity_type, entity_id, expected_revision in targets:
                self._delete(entity_type, entity_id, expected_revision, session=session)

        with self.client.start_session() as session:
            session.with_transaction(delete_each)

    def _set_once(self, entity_type: EntityType, entity_id: str, unset_field: str,
                  updates: Dict[str, Any]) -> bool:
        document = self.collection(entity_type).find_one_and_update(
            {"_id": _object_id(entity_id), unset_field: {"$in": [None, False]}},
            {"$set": updates, "$inc": {"revision": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if document is not None:
            return True
        if self._find_document(entity_type, entity_id) is None:
            raise NotFound(f"{entity_type.value} {entity_id} not found", entity_id=entity_id)
        return False

    def flag_overdue(self, request_id: str, now: datetime) -> bool:
        return self._set_once(
            EntityType.LICENSE_REQUEST, request_id, "isOverdue", {"isOverdue": True, "overdueAt": now}
        )

    def claim_reminder(self, reminder_id: str, now: datetime) -> bool:
        return self._set_once(EntityType.DEADLINE_REMINDER, reminder_id, "firedAt", {"firedAt": now})

    # Index Management

    def create_indexes(self) -> None:
        """Create the unique and scan indexes for all collections."""
        try:
            logger.info("Creating MongoDB indexes...")

            requests = self.collection(EntityType.LICENSE_REQUEST)
            requests.create_index("requestNumber", unique=True)
            requests.create_index([("status", ASCENDING), ("isOverdue", ASCENDING), ("deadline", ASCENDING)])
            requests.create_index([("applicantId", ASCENDING), ("createdAt", DESCENDING)])

            reports = self.collection(EntityType.AUDIT_REPORT)
            reports.create_index([("requestId", ASCENDING), ("status", ASCENDING)])

            versions = self.collection(EntityType.AUDIT_REPORT_VERSION)
            versions.create_index([("reportId", ASCENDING), ("versionNumber", ASCENDING)], unique=True)

            reminders = self.collection(EntityType.DEADLINE_REMINDER)
            reminders.create_index([("firedAt", ASCENDING), ("deadlineDate", ASCENDING)])
            reminders.create_index([("entity.entityType", ASCENDING), ("entity.entityId", ASCENDING)])

            users = self.collection(EntityType.USER)
            users.create_index(
                "email", unique=True, partialFilterExpression={"email": {"$type": "string"}}
            )
            users.create_index("role")

            logs = self.collection(EntityType.SERVICE_FLOW_LOG)
            logs.create_index([("requestId", ASCENDING), ("createdAt", ASCENDING)])

            logger.info("MongoDB indexes created successfully")

        except Exception as e:
            logger.error(f"Failed to create MongoDB indexes: {e}")
            raise


# Singleton instance for application use
_mongo_store: Optional[MongoEntityStore] = None


def get_mongo_store() -> MongoEntityStore:
    """Get singleton MongoDB entity store instance."""
    global _mongo_store
    if _mongo_store is None:
        _mongo_store = MongoEntityStore()
    return _mongo_store


def close_mongo_store() -> None:
    """Close MongoDB connection (for cleanup)."""
    global _mongo_store
    if _mongo_store:
        _mongo_store.close_connection()
        _mongo_store = None
