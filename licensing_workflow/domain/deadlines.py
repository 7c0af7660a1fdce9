# SPDX-License-Identifier: Apache-2.0

"""
Deadline maths and the two scheduler duties.

Both scans are idempotent: the store's conditional writes (flag_overdue,
claim_reminder) decide which caller acts, so overlapping ticks and manual runs
never notify twice for the same request or reminder.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from .authorization import REVIEWER_ROLE, SUPERVISOR_ROLE
from .errors import NotFound
from ..models.entities import DeadlineReminder, EntityRef, LicenseRequest
from ..models.enums import DeadlineType, NotificationPriority

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


DEADLINE_DAYS = 90
REMINDER_LEAD_DAYS = (3, 1)
APPOINTMENT_REMINDER_DAYS = (1,)


def compute_deadline(created_at: datetime) -> datetime:
    """Processing deadline of a request created at the given moment."""
    return created_at + timedelta(days=DEADLINE_DAYS)


def build_reminders(
    entity: EntityRef,
    deadline: datetime,
    lead_days: Iterable[int] = REMINDER_LEAD_DAYS,
    deadline_type: DeadlineType = DeadlineType.REQUEST,
    now: Optional[datetime] = None,
) -> List[DeadlineReminder]:
    """
    One reminder per distinct lead time.

    Args:
        entity: Reference to the entity owning the deadline
        deadline: The deadline itself
        lead_days: Days before the deadline at which each reminder becomes due
        deadline_type: Which deadline of the entity is tracked
        now: Creation timestamp for the reminders

    Returns:
        Unsaved DeadlineReminder entities
    """
    reminders = []
    for days in sorted(set(lead_days), reverse=True):
        reminder = DeadlineReminder(
            entity=entity,
            deadline_type=deadline_type,
            deadline_date=deadline,
            reminder_days=days,
        )
        if now is not None:
            reminder.created_at = now
            reminder.updated_at = now
        reminders.append(reminder)
    return reminders


@dataclass
class ScanResult:
    """Outcome of one scheduler duty run."""
    duty: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    scanned: int = 0
    acted: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duty": self.duty,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "scanned": self.scanned,
            "acted": self.acted,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def _escalate(dispatcher, request: LicenseRequest, now: datetime) -> None:
    days_late = (now - request.deadline).days
    title = f"Request {request.request_number} is overdue"
    message = (
        f"License request {request.request_number} ({request.title}) passed its deadline "
        f"{request.deadline:%Y-%m-%d} in status {request.status.value}; {days_late} day(s) late."
    )
    ref = request.ref()
    dispatcher.notify_role(SUPERVISOR_ROLE, title, message, NotificationPriority.URGENT, ref)
    dispatcher.notify_user(request.applicant_id, title, message, NotificationPriority.HIGH, ref)
    dispatcher.notify_user(request.assigned_inspector_id, title, message, NotificationPriority.HIGH, ref)


def detect_overdue(store, dispatcher, clock) -> ScanResult:
    """
    Flag every non-terminal request past its deadline and escalate it once.

    Only the caller whose conditional flag write succeeds sends notifications.
    A failure on one request is logged and counted; the scan carries on.
    """
    now = clock.now()
    result = ScanResult(duty="overdue", started_at=now)

    with tracer.start_as_current_span("deadlines.detect_overdue") as span:
        candidates = store.find_overdue(now)
        result.scanned = len(candidates)

        for request in candidates:
            try:
                if not store.flag_overdue(request.id, now):
                    result.skipped += 1
                    continue
                _escalate(dispatcher, request, now)
                result.acted += 1
                logger.info(
                    "License request flagged overdue",
                    extra={"extra_fields": {
                        "request_id": request.id,
                        "status": request.status.value,
                        "deadline": request.deadline.isoformat(),
                    }}
                )
            except Exception as e:
                result.failed += 1
                result.errors.append(f"{request.id}: {e}")
                logger.error(
                    "Overdue escalation failed",
                    extra={"extra_fields": {"request_id": request.id, "error": str(e)}},
                    exc_info=True
                )

        result.finished_at = clock.now()
        span.set_attributes({
            "deadlines.scanned": result.scanned,
            "deadlines.flagged": result.acted,
            "deadlines.failed": result.failed,
        })
        if result.failed:
            span.set_status(Status(StatusCode.ERROR, f"{result.failed} request(s) failed"))

    return result


def _remind(dispatcher, reminder: DeadlineReminder, target, now: datetime) -> None:
    days_left = reminder.days_until_deadline(now)
    ref = reminder.entity

    if isinstance(target, LicenseRequest):
        if reminder.deadline_type == DeadlineType.APPOINTMENT:
            title = f"Site visit for {target.request_number} is coming up"
            where = f" at {target.appointment_location}" if target.appointment_location else ""
            message = f"Inspection appointment on {reminder.deadline_date:%Y-%m-%d %H:%M}{where}."
        else:
            title = f"Request {target.request_number} deadline approaching"
            message = (
                f"License request {target.request_number} is due on "
                f"{reminder.deadline_date:%Y-%m-%d} ({days_left} day(s) left), "
                f"current status {target.status.value}."
            )
        dispatcher.notify_user(target.applicant_id, title, message, NotificationPriority.NORMAL, ref)
        if target.assigned_inspector_id:
            dispatcher.notify_user(target.assigned_inspector_id, title, message, NotificationPriority.HIGH, ref)
        elif reminder.deadline_type == DeadlineType.REQUEST and not target.is_draft():
            # Unsubmitted drafts concern the applicant only
            dispatcher.notify_role(REVIEWER_ROLE, title, message, NotificationPriority.HIGH, ref)
        return

    title = f"Deadline approaching for {ref}"
    message = f"Deadline {reminder.deadline_date:%Y-%m-%d} ({days_left} day(s) left)."
    dispatcher.notify_role(REVIEWER_ROLE, title, message, NotificationPriority.NORMAL, ref)


def _is_settled(target) -> bool:
    if isinstance(target, LicenseRequest):
        return target.is_terminal()
    return getattr(target, "is_approved", lambda: False)()


def dispatch_reminders(store, dispatcher, clock) -> ScanResult:
    """
    Fire every due reminder at most once.

    The reminder is claimed before anything is sent; the referenced entity is
    then resolved through the store. Reminders whose entity is gone or already
    settled are consumed silently.
    """
    now = clock.now()
    result = ScanResult(duty="reminders", started_at=now)

    with tracer.start_as_current_span("deadlines.dispatch_reminders") as span:
        due = store.find_due_reminders(now)
        result.scanned = len(due)

        for reminder in due:
            try:
                if not store.claim_reminder(reminder.id, now):
                    result.skipped += 1
                    continue
                try:
                    target = store.get(reminder.entity.entity_type, reminder.entity.entity_id)
                except NotFound:
                    logger.warning(
                        "Reminder references a missing entity",
                        extra={"extra_fields": {"reminder_id": reminder.id, "entity": str(reminder.entity)}}
                    )
                    result.skipped += 1
                    continue
                if _is_settled(target):
                    result.skipped += 1
                    continue
                _remind(dispatcher, reminder, target, now)
                result.acted += 1
                logger.info(
                    "Deadline reminder fired",
                    extra={"extra_fields": {
                        "reminder_id": reminder.id,
                        "entity": str(reminder.entity),
                        "reminder_days": reminder.reminder_days,
                    }}
                )
            except Exception as e:
                result.failed += 1
                result.errors.append(f"{reminder.id}: {e}")
                logger.error(
                    "Reminder dispatch failed",
                    extra={"extra_fields": {"reminder_id": reminder.id, "error": str(e)}},
                    exc_info=True
                )

        result.finished_at = clock.now()
        span.set_attributes({
            "deadlines.scanned": result.scanned,
            "deadlines.fired": result.acted,
            "deadlines.failed": result.failed,
        })
        if result.failed:
            span.set_status(Status(StatusCode.ERROR, f"{result.failed} reminder(s) failed"))

    return result

