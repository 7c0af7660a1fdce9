# SPDX-License-Identifier: Apache-2.0

"""
Notification sink contract and the dispatcher used by the workflow core.

Sinks deliver "notify user X" / "notify role R" events. The dispatcher hands
events to a sink and never lets a delivery failure reach the caller: a missed
notification must not roll back a completed state change.
"""

import logging
import threading
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from ..models.base import utc_now
from ..models.entities import EntityRef
from ..models.enums import NotificationPriority, UserRole

logger = logging.getLogger(__name__)


@dataclass
class NotificationEvent:
    """A single outbound notification."""
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    user_id: Optional[str] = None
    role: Optional[UserRole] = None
    entity: Optional[EntityRef] = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if (self.user_id is None) == (self.role is None):
            raise ValueError("NotificationEvent targets exactly one of user_id or role")

    @property
    def target(self) -> str:
        return f"user:{self.user_id}" if self.user_id else f"role:{self.role.value}"


class NotificationSink:
    """One-way delivery contract; implementations may raise, the dispatcher absorbs it."""

    def notify_user(
        self,
        user_id: str,
        title: str,
        message: str,
        priority: NotificationPriority,
        entity: Optional[EntityRef],
    ) -> None:
        raise NotImplementedError

    def notify_role(
        self,
        role: UserRole,
        title: str,
        message: str,
        priority: NotificationPriority,
        entity: Optional[EntityRef],
    ) -> None:
        raise NotImplementedError


class LoggingNotificationSink(NotificationSink):
    """Writes notifications to the log. Default sink when no broker is configured."""

    def notify_user(self, user_id, title, message, priority, entity):
        logger.info(
            f"Notify user {user_id}: {title}",
            extra={"extra_fields": {
                "user_id": user_id,
                "priority": priority.value,
                "entity": str(entity) if entity else None,
                "notification_message": message,
            }}
        )

    def notify_role(self, role, title, message, priority, entity):
        logger.info(
            f"Notify role {role.value}: {title}",
            extra={"extra_fields": {
                "role": role.value,
                "priority": priority.value,
                "entity": str(entity) if entity else None,
                "notification_message": message,
            }}
        )


class NotificationDispatcher:
    """
    Fire-and-forget front of a NotificationSink.

    With an executor, delivery happens off the caller's thread; without one it
    happens inline. Either way failures are logged and counted, never raised.
    """

    def __init__(self, sink: NotificationSink, executor: Optional[Executor] = None):
        self.sink = sink
        self.executor = executor
        self._lock = threading.Lock()
        self._stats = {"dispatched": 0, "delivered": 0, "failed": 0}

    def notify_user(
        self,
        user_id: Optional[str],
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        entity: Optional[EntityRef] = None,
    ) -> None:
        if not user_id:
            return
        self.dispatch(NotificationEvent(
            title=title, message=message, priority=priority, user_id=user_id, entity=entity
        ))

    def notify_role(
        self,
        role: UserRole,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        entity: Optional[EntityRef] = None,
    ) -> None:
        self.dispatch(NotificationEvent(
            title=title, message=message, priority=priority, role=role, entity=entity
        ))

    def dispatch(self, event: NotificationEvent) -> None:
        with self._lock:
            self._stats["dispatched"] += 1
        if self.executor is None:
            self._deliver(event)
            return
        try:
            self.executor.submit(self._deliver, event)
        except RuntimeError as e:
            # Executor already shut down
            self._record_failure(event, e)

    def dispatch_all(self, events: List[NotificationEvent]) -> None:
        for event in events:
            self.dispatch(event)

    def _deliver(self, event: NotificationEvent) -> None:
        try:
            if event.user_id:
                self.sink.notify_user(event.user_id, event.title, event.message, event.priority, event.entity)
            else:
                self.sink.notify_role(event.role, event.title, event.message, event.priority, event.entity)
        except Exception as e:
            self._record_failure(event, e)
            return
        with self._lock:
            self._stats["delivered"] += 1

    def _record_failure(self, event: NotificationEvent, error: Exception) -> None:
        with self._lock:
            self._stats["failed"] += 1
        logger.error(
            "Notification delivery failed",
            extra={"extra_fields": {
                "target": event.target,
                "title": event.title,
                "entity": str(event.entity) if event.entity else None,
                "error": str(error),
                "error_type": type(error).__name__,
            }},
            exc_info=(type(error), error, error.__traceback__)
        )

    def statistics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the executor; with wait, queued notifications are delivered first."""
        if self.executor is not None:
            self.executor.shutdown(wait=wait)
            logger.info("Notification executor shut down", extra={"extra_fields": self.statistics()})
