# SPDX-License-Identifier: Apache-2.0

"""
License request state machine.

Every status change of a LicenseRequest goes through this module. Each
operation is one guarded read-modify-write: load the request, resolve the
action against the fixed transition table, check that the acting user's role
grants the capability the edge requires, check auxiliary guards, then save the
new state together with its ServiceFlowLog entry using the revision that was
read. Notifications go out only after the write committed.
"""

import logging
from datetime import date, datetime, time
from typing import Any, Callable, Dict, List, Optional, Union

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from .authorization import INTAKE_ROLE, REVIEWER_ROLE, FINAL_REVIEWER_ROLE, can_inspect, check_capability
from .deadlines import APPOINTMENT_REMINDER_DAYS, build_reminders, compute_deadline
from .errors import (
    IneligibleInspector, InvalidTransition, MissingCapability, NotFound, WorkflowError, parse_enum
)
from .transitions import REQUEST_TABLE, Transition
from ..models.entities import AuditReport, LicenseRequest, ServiceFlowLog, User
from ..models.enums import DeadlineType, EntityType, LicenseType, NotificationPriority, RequestStatus, UserRole

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_APPOINTMENT_TIME = time(9, 0)

Mutation = Callable[[LicenseRequest, datetime], Dict[str, Any]]


def _require_reason(reason: Optional[str], action: str) -> str:
    if reason is None or not reason.strip():
        raise InvalidTransition(f"A non-empty reason is required to {action}", action=action)
    return reason.strip()


class RequestStateMachine:
    """
    Owns the LicenseRequest transition table and its guards.

    Args:
        store: EntityStore used for all reads and writes
        dispatcher: NotificationDispatcher receiving events after each commit
        clock: Clock supplying the current time
    """

    def __init__(self, store, dispatcher, clock):
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock

    # ------------------------------------------------------------------
    # Creation and deletion
    # ------------------------------------------------------------------

    def create_request(
        self,
        applicant_id: str,
        title: str,
        license_type: Union[LicenseType, str] = LicenseType.NEW,
        description: Optional[str] = None,
        request_number: Optional[str] = None,
    ) -> LicenseRequest:
        """
        Create a draft request with its fixed deadline and deadline reminders.

        Raises:
            InvalidEnumValue: if license_type is not a known type
        """
        license_type = parse_enum(LicenseType, license_type, "license_type")
        now = self.clock.now()

        with tracer.start_as_current_span("request.create") as span:
            request = LicenseRequest(
                applicant_id=applicant_id,
                request_number=request_number or "pending",
                license_type=license_type,
                title=title,
                description=description,
                created_at=now,
                updated_at=now,
                deadline=compute_deadline(now),
            )
            if request_number is None:
                request.request_number = f"REQ-{now:%Y%m%d}-{request.id[-6:].upper()}"

            reminders = build_reminders(request.ref(), request.deadline, now=now)
            log = self._flow_log(request, None, "create", applicant_id, None, now)
            self.store.save_all([request, *reminders, log])

            span.set_attributes({"request.id": request.id, "request.deadline": request.deadline.isoformat()})
            logger.info(
                "License request created",
                extra={"extra_fields": {
                    "request_id": request.id,
                    "request_number": request.request_number,
                    "deadline": request.deadline.isoformat(),
                    "reminders": len(reminders),
                }}
            )
        return request

    def delete_draft(self, request_id: str, actor_id: Optional[str] = None) -> None:
        """
        Hard-delete a request that was never submitted, with its reminders and log.

        Raises:
            InvalidTransition: if the request left draft
        """
        request = self.get(request_id)
        if not request.is_draft():
            raise InvalidTransition(
                f"Only draft requests can be deleted (status {request.status.value})",
                action="delete",
                current_status=request.status.value,
            )
        # Children only grow through transitions, which bump the request revision
        self.store.delete_all([
            (EntityType.LICENSE_REQUEST, request.id, request.revision),
            *((EntityType.DEADLINE_REMINDER, reminder.id, None)
              for reminder in self.store.find(EntityType.DEADLINE_REMINDER, entity=request.ref())),
            *((EntityType.SERVICE_FLOW_LOG, log.id, None)
              for log in self.store.find(EntityType.SERVICE_FLOW_LOG, request_id=request.id)),
        ])
        logger.info(
            "Draft license request deleted",
            extra={"extra_fields": {"request_id": request.id, "actor_id": actor_id}}
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def submit(self, request_id: str, actor_id: Optional[str] = None) -> LicenseRequest:
        request = self._apply(request_id, "submit", actor_id)
        self.dispatcher.notify_role(
            INTAKE_ROLE,
            "New license request",
            f"Request {request.request_number} ({request.title}) was submitted for intake.",
            NotificationPriority.NORMAL,
            request.ref(),
        )
        return request

    def accept(self, request_id: str, actor_id: Optional[str] = None) -> LicenseRequest:
        request = self._apply(request_id, "accept", actor_id)
        self._notify_applicant(request, "Request accepted", "Your request was accepted for processing.")
        return request

    def reject(self, request_id: str, reason: str, actor_id: Optional[str] = None) -> LicenseRequest:
        reason = _require_reason(reason, "reject")
        request = self._apply(
            request_id, "reject", actor_id, reason=reason,
            mutate=lambda r, now: {"rejection_reason": reason},
        )
        self._notify_applicant(
            request, "Request rejected", f"Your request was rejected: {reason}", NotificationPriority.HIGH
        )
        return request

    def assign_inspector(self, request_id: str, inspector_id: str, assigned_by_id: str) -> LicenseRequest:
        """
        Assign an inspector and move the request to assigned.

        Raises:
            InvalidTransition: if the request cannot be assigned
            MissingCapability: if the assigner's role cannot assign
            IneligibleInspector: if the target user cannot inspect
            NotFound: if the request or either user is unknown
        """
        def guard(request: LicenseRequest) -> None:
            inspector = self._user(inspector_id)
            if not can_inspect(inspector):
                raise IneligibleInspector(
                    f"User {inspector_id} with role {inspector.role.value} cannot inspect",
                    action="assign_inspector",
                    inspector_id=inspector_id,
                )

        request = self._apply(
            request_id, "assign_inspector", assigned_by_id, guard=guard,
            mutate=lambda r, now: {
                "assigned_inspector_id": inspector_id,
                "assigned_by_id": assigned_by_id,
                "assigned_at": now,
            },
        )
        self.dispatcher.notify_user(
            inspector_id,
            "Inspection assigned",
            f"You were assigned to inspect request {request.request_number} ({request.title}).",
            NotificationPriority.HIGH,
            request.ref(),
        )
        self._notify_applicant(request, "Inspector assigned", "An inspector was assigned to your request.")
        return request

    def set_appointment(
        self,
        request_id: str,
        appointment_date: Union[date, datetime],
        appointment_time: Optional[time] = None,
        location: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> LicenseRequest:
        """
        Schedule the site visit and add a reminder one day ahead of it.

        A plain date is combined with appointment_time (09:00 by default) in the
        clock's timezone.
        """
        if appointment_date is None:
            raise InvalidTransition("An appointment date is required", action="set_appointment")
        when = self._combine(appointment_date, appointment_time)

        def extra_entities(request: LicenseRequest, now: datetime) -> List[Any]:
            return build_reminders(
                request.ref(), when, APPOINTMENT_REMINDER_DAYS, DeadlineType.APPOINTMENT, now=now
            )

        request = self._apply(
            request_id, "set_appointment", actor_id,
            mutate=lambda r, now: {"appointment_date": when, "appointment_location": location},
            extra_entities=extra_entities,
        )
        message = f"Site visit scheduled for {when:%Y-%m-%d %H:%M}"
        if location:
            message += f" at {location}"
        self._notify_applicant(request, "Inspection appointment scheduled", message + ".")
        self.dispatcher.notify_user(
            request.assigned_inspector_id, "Inspection appointment scheduled", message + ".",
            NotificationPriority.NORMAL, request.ref(),
        )
        return request

    def start_inspection(self, request_id: str, actor_id: Optional[str] = None) -> LicenseRequest:
        request = self._apply(
            request_id, "start_inspection", actor_id,
            mutate=lambda r, now: {"inspection_date": now},
        )
        self._notify_applicant(request, "Inspection started", "The site inspection has started.")
        return request

    def complete_inspection(self, request_id: str, actor_id: Optional[str] = None) -> LicenseRequest:
        request = self._apply(
            request_id, "complete_inspection", actor_id,
            mutate=lambda r, now: {"completion_date": now},
        )
        self.dispatcher.notify_role(
            REVIEWER_ROLE,
            "Inspection completed",
            f"Inspection of request {request.request_number} is done and awaits review.",
            NotificationPriority.NORMAL,
            request.ref(),
        )
        self._notify_applicant(request, "Inspection completed", "The site inspection was completed.")
        return request

    def request_document_edit(
        self, request_id: str, reason: Optional[str] = None, actor_id: Optional[str] = None
    ) -> LicenseRequest:
        request = self._apply(request_id, "request_document_edit", actor_id, reason=reason)
        message = "Please revise the documents of your request."
        if reason:
            message += f" {reason}"
        self._notify_applicant(request, "Document revision requested", message, NotificationPriority.HIGH)
        self.dispatcher.notify_user(
            request.assigned_inspector_id, "Document revision requested", message,
            NotificationPriority.NORMAL, request.ref(),
        )
        return request

    def approve_report(self, request_id: str, actor_id: Optional[str] = None) -> LicenseRequest:
        """Certify the request's approved audit report and hand it to final review."""
        def guard(request: LicenseRequest) -> None:
            if self.approved_report(request.id) is None:
                raise InvalidTransition(
                    f"Request {request.id} has no approved audit report",
                    action="approve_report",
                )

        request = self._apply(request_id, "approve_report", actor_id, guard=guard)
        self.dispatcher.notify_role(
            FINAL_REVIEWER_ROLE,
            "Audit report ready for final approval",
            f"The audit report of request {request.request_number} was certified.",
            NotificationPriority.HIGH,
            request.ref(),
        )
        return request

    def approve(self, request_id: str, actor_id: Optional[str] = None) -> LicenseRequest:
        """
        Grant the license.

        From inspection_done this additionally requires an approved audit report
        whose compliance is compliant.
        """
        def guard(request: LicenseRequest) -> None:
            if request.is_inspection_done() and not self._has_compliant_report(request.id):
                raise InvalidTransition(
                    f"Request {request.id} needs an approved, compliant audit report before approval",
                    action="approve",
                    current_status=request.status.value,
                )

        request = self._apply(request_id, "approve", actor_id, guard=guard)
        self._notify_applicant(
            request, "License approved", f"Request {request.request_number} was approved.",
            NotificationPriority.HIGH,
        )
        return request

    def reject_final(self, request_id: str, reason: str, actor_id: Optional[str] = None) -> LicenseRequest:
        reason = _require_reason(reason, "reject_final")
        request = self._apply(
            request_id, "reject_final", actor_id, reason=reason,
            mutate=lambda r, now: {"rejection_reason": reason},
        )
        self._notify_applicant(
            request, "License rejected", f"Your request was rejected in final review: {reason}",
            NotificationPriority.HIGH,
        )
        return request

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, request_id: str) -> LicenseRequest:
        return self.store.get(EntityType.LICENSE_REQUEST, request_id)

    def available_actions(
        self, request: Union[LicenseRequest, str], role: Optional[UserRole] = None
    ) -> List[str]:
        """
        Actions whose status and auxiliary guards currently hold.

        With a role, only actions that role is entitled to take are listed.
        """
        if isinstance(request, str):
            request = self.get(request)
        actions = []
        for action in REQUEST_TABLE.actions_from(request.status, role):
            if action == "approve_report" and self.approved_report(request.id) is None:
                continue
            if action == "approve" and request.is_inspection_done() and not self._has_compliant_report(request.id):
                continue
            if action not in actions:
                actions.append(action)
        return actions

    def history(self, request_id: str) -> List[ServiceFlowLog]:
        logs = self.store.find(EntityType.SERVICE_FLOW_LOG, request_id=request_id)
        return sorted(logs, key=lambda log: log.created_at)

    def approved_report(self, request_id: str) -> Optional[AuditReport]:
        """Most recently approved audit report of a request, if any."""
        reports = [
            report for report in self.store.find(EntityType.AUDIT_REPORT, request_id=request_id)
            if report.is_approved()
        ]
        if not reports:
            return None
        return max(reports, key=lambda report: report.approved_at or report.updated_at)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply(
        self,
        request_id: str,
        action: str,
        actor_id: Optional[str],
        reason: Optional[str] = None,
        guard: Optional[Callable[[LicenseRequest], None]] = None,
        mutate: Optional[Mutation] = None,
        extra_entities: Optional[Callable[[LicenseRequest, datetime], List[Any]]] = None,
    ) -> LicenseRequest:
        with tracer.start_as_current_span(f"request.{action}") as span:
            span.set_attributes({"request.id": request_id, "workflow.action": action})
            try:
                request = self.get(request_id)
                transition = REQUEST_TABLE.resolve(action, request.status)
                self._authorize(transition, actor_id)
                if guard is not None:
                    guard(request)

                now = self.clock.now()
                updates = dict(mutate(request, now)) if mutate is not None else {}
                updates.update(status=transition.to_status, updated_at=now)
                # Validate the new state as a whole so cross-field rules see it at once
                updated = LicenseRequest.model_validate({**request.model_dump(), **updates})

                entities = [updated, self._flow_log(updated, request.status, action, actor_id, reason, now)]
                if extra_entities is not None:
                    entities.extend(extra_entities(updated, now))
                self.store.save_all(entities)

            except WorkflowError as e:
                span.set_status(Status(StatusCode.ERROR, e.message))
                logger.warning(
                    f"License request {action} refused",
                    extra={"extra_fields": {
                        "request_id": request_id,
                        "action": action,
                        "error_type": e.error_type,
                        "error": e.message,
                    }}
                )
                raise

            span.set_attributes({
                "request.from_status": transition.from_status.value,
                "request.to_status": transition.to_status.value,
            })
            logger.info(
                f"License request {transition.from_status.value} -> {transition.to_status.value}",
                extra={"extra_fields": {
                    "request_id": request_id,
                    "action": action,
                    "actor_id": actor_id,
                    "revision": updated.revision,
                }}
            )
        return updated

    def _flow_log(
        self,
        request: LicenseRequest,
        previous: Optional[RequestStatus],
        action: str,
        actor_id: Optional[str],
        reason: Optional[str],
        now: datetime,
    ) -> ServiceFlowLog:
        return ServiceFlowLog(
            request_id=request.id,
            previous_status=previous,
            new_status=request.status,
            action=action,
            changed_by=actor_id,
            reason=reason,
            created_at=now,
            updated_at=now,
        )

    def _authorize(self, transition: Transition, actor_id: Optional[str]) -> None:
        if transition.required is None:
            return
        if actor_id is None:
            raise MissingCapability(
                f"Cannot {transition.action} license request without an acting user",
                action=transition.action,
                required=transition.required.value,
            )
        result = check_capability(self._user(actor_id), transition.required)
        if not result.allowed:
            raise MissingCapability(
                f"User {actor_id} cannot {transition.action} license requests: {result.reason}",
                action=transition.action,
                actor_id=actor_id,
                missing_capabilities=result.missing_capabilities,
            )

    def _user(self, user_id: str) -> User:
        try:
            return self.store.get(EntityType.USER, user_id)
        except NotFound:
            raise NotFound(f"User {user_id} not found", entity_type=EntityType.USER.value, entity_id=user_id) from None

    def _has_compliant_report(self, request_id: str) -> bool:
        report = self.approved_report(request_id)
        return report is not None and report.is_compliant()

    def _combine(self, appointment_date: Union[date, datetime], appointment_time: Optional[time]) -> datetime:
        if isinstance(appointment_date, datetime):
            when = appointment_date
            if appointment_time is not None:
                when = when.replace(hour=appointment_time.hour, minute=appointment_time.minute)
        else:
            when = datetime.combine(appointment_date, appointment_time or DEFAULT_APPOINTMENT_TIME)
        if when.tzinfo is None:
            when = when.replace(tzinfo=self.clock.now().tzinfo)
        return when

    def _notify_applicant(
        self,
        request: LicenseRequest,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.NORMAL,
    ) -> None:
        self.dispatcher.notify_user(request.applicant_id, title, message, priority, request.ref())
