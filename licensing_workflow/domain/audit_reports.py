# SPDX-License-Identifier: Apache-2.0

"""
Audit report versioning and the per-version approval cycle.

The highest-numbered version of a report is authoritative: only it may change
status, it can never be deleted, and the report's status, compliance and risk
level are written through together with it in one atomic store call.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from .authorization import FINAL_REVIEWER_ROLE, REVIEWER_ROLE, check_capability
from .errors import (
    CannotDeleteLatest,
    InvalidTransition,
    MissingCapability,
    NotFound,
    WorkflowError,
    parse_enum,
    parse_optional_enum,
)
from .transitions import VERSION_TABLE, Transition
from ..models.entities import AuditReport, AuditReportVersion, User
from ..models.enums import ComplianceStatus, EntityType, NotificationPriority, ReportStatus, RiskLevel

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CONTENT_FIELDS = (
    "title",
    "content",
    "findings",
    "recommendations",
    "corrective_actions",
    "compliance_status",
    "risk_level",
    "follow_up_required",
    "follow_up_date",
    "file_attachments",
)

# Statuses a version may be created in
INITIAL_VERSION_STATUSES = frozenset({ReportStatus.DRAFT, ReportStatus.SUBMITTED})

# Statuses in which the latest version's content may still be edited
EDITABLE_VERSION_STATUSES = frozenset({ReportStatus.DRAFT})

Updates = Callable[[AuditReportVersion, AuditReport, datetime], Dict[str, Any]]


def parse_content(content: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Keep known content fields and coerce the enumerated ones.

    Raises:
        InvalidEnumValue: on an unknown compliance status or risk level
    """
    content = dict(content or {})
    parsed = {key: content[key] for key in CONTENT_FIELDS if key in content}
    if "compliance_status" in parsed:
        parsed["compliance_status"] = parse_optional_enum(
            ComplianceStatus, parsed["compliance_status"], "compliance_status"
        )
    if "risk_level" in parsed:
        parsed["risk_level"] = parse_optional_enum(RiskLevel, parsed["risk_level"], "risk_level")
    return parsed


class AuditVersionWorkflow:
    """Owns AuditReport and AuditReportVersion status changes."""

    def __init__(self, store, dispatcher, clock):
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_report(
        self,
        request_id: str,
        inspection_id: str,
        inspector_id: str,
        content: Optional[Dict[str, Any]] = None,
        reviewer_id: Optional[str] = None,
    ) -> Tuple[AuditReport, AuditReportVersion]:
        """
        Create a draft report together with its draft version 1.

        Raises:
            NotFound: if the license request is unknown
            InvalidEnumValue: on an unknown compliance status or risk level
        """
        fields = parse_content(content)
        request = self.store.get(EntityType.LICENSE_REQUEST, request_id)
        now = self.clock.now()
        title = fields.pop("title", None) or f"Audit report for {request.request_number}"

        with tracer.start_as_current_span("audit_report.create") as span:
            report = AuditReport(
                request_id=request_id,
                inspection_id=inspection_id,
                inspector_id=inspector_id,
                reviewer_id=reviewer_id,
                title=title,
                status=ReportStatus.DRAFT,
                compliance_status=fields.get("compliance_status"),
                risk_level=fields.get("risk_level"),
                latest_version_number=1,
                created_at=now,
                updated_at=now,
            )
            version = AuditReportVersion(
                report_id=report.id,
                version_number=1,
                title=title,
                submitted_by_id=inspector_id,
                created_at=now,
                updated_at=now,
                **fields,
            )
            self.store.save_all([report, version])
            span.set_attributes({"audit_report.id": report.id, "license_request.id": request_id})

        logger.info(
            "Audit report created",
            extra={"extra_fields": {"report_id": report.id, "request_id": request_id, "inspector_id": inspector_id}}
        )
        self.dispatcher.notify_role(
            REVIEWER_ROLE,
            "New audit report",
            f"An audit report was drafted for request {request.request_number}.",
            NotificationPriority.NORMAL,
            report.ref(),
        )
        return report, version

    def create_version(
        self,
        report_id: str,
        content: Optional[Dict[str, Any]],
        submitted_by_id: str,
        status: Union[ReportStatus, str] = ReportStatus.DRAFT,
    ) -> AuditReportVersion:
        """
        Append a version numbered one above the current maximum.

        Concurrent creators race on the report revision and on the unique
        (report, number) pair; the loser gets ConcurrentModification.

        Raises:
            InvalidEnumValue: on an unknown status, compliance status or risk level
            InvalidTransition: if the report is approved or the status is not draft/submitted
        """
        status = parse_enum(ReportStatus, status, "status")
        fields = parse_content(content)
        if status not in INITIAL_VERSION_STATUSES:
            raise InvalidTransition(
                f"A new version must start as draft or submitted, not {status.value}",
                action="create_version",
            )

        with tracer.start_as_current_span("audit_report.create_version") as span:
            report = self.get_report(report_id)
            if report.is_approved():
                raise InvalidTransition(
                    f"Audit report {report_id} is approved and cannot take new versions",
                    action="create_version",
                    current_status=report.status.value,
                )

            now = self.clock.now()
            number = self.store.max_version_number(report_id) + 1
            version = AuditReportVersion(
                report_id=report_id,
                version_number=number,
                title=fields.pop("title", None) or report.title,
                status=status,
                submitted_by_id=submitted_by_id,
                created_at=now,
                updated_at=now,
                **fields,
            )
            report_updates = {
                "status": version.status,
                "compliance_status": version.compliance_status,
                "risk_level": version.risk_level,
                "latest_version_number": number,
                "updated_at": now,
            }
            if status == ReportStatus.SUBMITTED:
                report_updates["submitted_at"] = now
            updated_report = AuditReport.model_validate({**report.model_dump(), **report_updates})
            self.store.save_all([updated_report, version])
            span.set_attributes({"audit_report.id": report_id, "audit_report.version": number})

        logger.info(
            "Audit report version created",
            extra={"extra_fields": {
                "report_id": report_id,
                "version_id": version.id,
                "version_number": number,
                "status": status.value,
            }}
        )
        if status == ReportStatus.SUBMITTED:
            self._notify_reviewers(updated_report, version)
        return version

    def update_version(
        self,
        version_id: str,
        content: Optional[Dict[str, Any]],
        actor_id: Optional[str] = None,
    ) -> AuditReportVersion:
        """
        Edit the content of the latest version while it is still a draft.

        Only the fields present in content change. The version's compliance
        status and risk level are mirrored onto the report in the same store call.

        Raises:
            InvalidEnumValue: on an unknown compliance status or risk level
            InvalidTransition: if the version was superseded or has left draft
        """
        fields = parse_content(content)
        if not fields.get("title"):
            fields.pop("title", None)

        with tracer.start_as_current_span("audit_version.update") as span:
            span.set_attributes({"audit_version.id": version_id, "workflow.action": "update_version"})
            version = self.get_version(version_id)
            report = self.get_report(version.report_id)
            latest = self.store.max_version_number(report.id)
            if version.version_number != latest:
                raise InvalidTransition(
                    f"Version {version.version_number} was superseded by version {latest}",
                    action="update_version",
                    version_number=version.version_number,
                )
            if version.status not in EDITABLE_VERSION_STATUSES:
                raise InvalidTransition(
                    f"Version {version.version_number} is {version.status.value} and can no longer be edited",
                    action="update_version",
                    current_status=version.status.value,
                )

            now = self.clock.now()
            updated_version = AuditReportVersion.model_validate(
                {**version.model_dump(), **fields, "updated_at": now}
            )
            updated_report = AuditReport.model_validate({
                **report.model_dump(),
                "compliance_status": updated_version.compliance_status,
                "risk_level": updated_version.risk_level,
                "updated_at": now,
            })
            self.store.save_all([updated_report, updated_version])

        logger.info(
            "Audit report version updated",
            extra={"extra_fields": {
                "version_id": version_id,
                "report_id": report.id,
                "fields": sorted(fields),
                "actor_id": actor_id,
            }}
        )
        return updated_version

    # ------------------------------------------------------------------
    # Version transitions
    # ------------------------------------------------------------------

    def submit(self, version_id: str, actor_id: Optional[str] = None) -> AuditReportVersion:
        version, report = self._apply(
            version_id, "submit", actor_id,
            report_updates=lambda v, r, now: {"submitted_at": now},
        )
        self._notify_reviewers(report, version)
        return version

    def send_for_review(self, version_id: str, reviewer_id: str) -> AuditReportVersion:
        version, report = self._apply(
            version_id, "send_for_review", reviewer_id,
            version_updates=lambda v, r, now: {"reviewed_by_id": reviewer_id},
            report_updates=lambda v, r, now: {"reviewer_id": reviewer_id},
        )
        self.dispatcher.notify_user(
            version.submitted_by_id,
            "Audit report under review",
            f"Version {version.version_number} of '{report.title}' is being reviewed.",
            NotificationPriority.NORMAL,
            report.ref(),
        )
        return version

    def approve(self, version_id: str, approved_by_id: str, comments: Optional[str] = None) -> AuditReportVersion:
        version, report = self._apply(
            version_id, "approve", approved_by_id,
            version_updates=lambda v, r, now: {"approved_by_id": approved_by_id, "review_comments": comments},
            report_updates=lambda v, r, now: {"approved_at": now, "reviewed_at": now},
        )
        self.dispatcher.notify_user(
            version.submitted_by_id,
            "Audit report approved",
            f"Version {version.version_number} of '{report.title}' was approved.",
            NotificationPriority.HIGH,
            report.ref(),
        )
        self.dispatcher.notify_role(
            FINAL_REVIEWER_ROLE,
            "Audit report approved",
            f"Audit report '{report.title}' was approved and awaits certification.",
            NotificationPriority.HIGH,
            report.ref(),
        )
        return version

    def reject(
        self,
        version_id: str,
        reason: str,
        comments: Optional[str] = None,
        reviewer_id: Optional[str] = None,
    ) -> AuditReportVersion:
        if reason is None or not reason.strip():
            raise InvalidTransition("A non-empty reason is required to reject a version", action="reject")
        reason = reason.strip()
        version, report = self._apply(
            version_id, "reject", reviewer_id,
            version_updates=lambda v, r, now: {"rejection_reason": reason, "review_comments": comments},
            report_updates=lambda v, r, now: {"reviewed_at": now},
        )
        self.dispatcher.notify_user(
            version.submitted_by_id,
            "Audit report rejected",
            f"Version {version.version_number} of '{report.title}' was rejected: {reason}",
            NotificationPriority.HIGH,
            report.ref(),
        )
        return version

    def request_edit(
        self,
        version_id: str,
        comments: Optional[str] = None,
        reviewer_id: Optional[str] = None,
    ) -> AuditReportVersion:
        version, report = self._apply(
            version_id, "request_edit", reviewer_id,
            version_updates=lambda v, r, now: {"review_comments": comments},
            report_updates=lambda v, r, now: {"reviewed_at": now},
        )
        message = f"Version {version.version_number} of '{report.title}' needs changes."
        if comments:
            message += f" {comments}"
        self.dispatcher.notify_user(
            version.submitted_by_id, "Audit report needs edits", message, NotificationPriority.NORMAL, report.ref()
        )
        return version

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_version(self, version_id: str) -> None:
        """
        Delete a superseded draft version.

        Raises:
            CannotDeleteLatest: if the version is the highest-numbered one of its report
            InvalidTransition: if the version is not a draft
        """
        version = self.get_version(version_id)
        latest = self.store.max_version_number(version.report_id)
        if version.version_number >= latest:
            raise CannotDeleteLatest(
                f"Version {version.version_number} is the latest version of report {version.report_id}",
                report_id=version.report_id,
                version_number=version.version_number,
            )
        if version.status != ReportStatus.DRAFT:
            raise InvalidTransition(
                f"Only superseded draft versions can be deleted (status {version.status.value})",
                action="delete_version",
                current_status=version.status.value,
            )
        self.store.delete(EntityType.AUDIT_REPORT_VERSION, version.id, expected_revision=version.revision)
        logger.info(
            "Audit report version deleted",
            extra={"extra_fields": {"version_id": version.id, "report_id": version.report_id,
                                    "version_number": version.version_number}}
        )

    def delete_report(self, report_id: str) -> None:
        """Hard-delete a draft report and all of its versions."""
        report = self.get_report(report_id)
        if not report.is_draft():
            raise InvalidTransition(
                f"Only draft audit reports can be deleted (status {report.status.value})",
                action="delete_report",
                current_status=report.status.value,
            )
        self.store.delete_all([
            (EntityType.AUDIT_REPORT, report.id, report.revision),
            *((EntityType.AUDIT_REPORT_VERSION, version.id, version.revision)
              for version in self.store.list_versions(report.id)),
        ])
        logger.info("Audit report deleted", extra={"extra_fields": {"report_id": report.id}})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_report(self, report_id: str) -> AuditReport:
        return self.store.get(EntityType.AUDIT_REPORT, report_id)

    def get_version(self, version_id: str) -> AuditReportVersion:
        return self.store.get(EntityType.AUDIT_REPORT_VERSION, version_id)

    def versions(self, report_id: str) -> List[AuditReportVersion]:
        return self.store.list_versions(report_id)

    def latest_version(self, report_id: str) -> Optional[AuditReportVersion]:
        versions = self.store.list_versions(report_id)
        return versions[-1] if versions else None

    def statistics(self) -> Dict[str, Any]:
        """Counts of reports and versions by status, and of reports by compliance."""
        reports = self.store.find(EntityType.AUDIT_REPORT)
        versions = self.store.find(EntityType.AUDIT_REPORT_VERSION)
        report_status = Counter(report.status.value for report in reports)
        compliance = Counter(
            report.compliance_status.value for report in reports if report.compliance_status is not None
        )
        return {
            "total_reports": len(reports),
            "total_versions": len(versions),
            "reports_by_status": {status.value: report_status.get(status.value, 0) for status in ReportStatus},
            "versions_by_status": dict(Counter(version.status.value for version in versions)),
            "reports_by_compliance": dict(compliance),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply(
        self,
        version_id: str,
        action: str,
        actor_id: Optional[str],
        version_updates: Optional[Updates] = None,
        report_updates: Optional[Updates] = None,
    ) -> Tuple[AuditReportVersion, AuditReport]:
        with tracer.start_as_current_span(f"audit_version.{action}") as span:
            span.set_attributes({"audit_version.id": version_id, "workflow.action": action})
            try:
                version = self.get_version(version_id)
                transition = VERSION_TABLE.resolve(action, version.status)
                report = self.get_report(version.report_id)
                latest = self.store.max_version_number(report.id)
                if version.version_number != latest:
                    raise InvalidTransition(
                        f"Version {version.version_number} was superseded by version {latest}",
                        action=action,
                        version_number=version.version_number,
                    )
                self._authorize(transition, actor_id)

                now = self.clock.now()
                v_changes = dict(version_updates(version, report, now)) if version_updates else {}
                v_changes.update(status=transition.to_status, updated_at=now)
                updated_version = AuditReportVersion.model_validate({**version.model_dump(), **v_changes})

                r_changes = dict(report_updates(version, report, now)) if report_updates else {}
                r_changes.update(
                    status=updated_version.status,
                    compliance_status=updated_version.compliance_status,
                    risk_level=updated_version.risk_level,
                    latest_version_number=updated_version.version_number,
                    updated_at=now,
                )
                updated_report = AuditReport.model_validate({**report.model_dump(), **r_changes})

                self.store.save_all([updated_report, updated_version])

            except WorkflowError as e:
                span.set_status(Status(StatusCode.ERROR, e.message))
                logger.warning(
                    f"Audit version {action} refused",
                    extra={"extra_fields": {
                        "version_id": version_id,
                        "action": action,
                        "error_type": e.error_type,
                        "error": e.message,
                    }}
                )
                raise

            logger.info(
                f"Audit version {transition.from_status.value} -> {transition.to_status.value}",
                extra={"extra_fields": {
                    "version_id": version_id,
                    "report_id": updated_report.id,
                    "action": action,
                    "actor_id": actor_id,
                }}
            )
        return updated_version, updated_report

    def _authorize(self, transition: Transition, actor_id: Optional[str]) -> None:
        if transition.required is None:
            return
        if actor_id is None:
            raise MissingCapability(
                f"Cannot {transition.action} an audit report version without an acting user",
                action=transition.action,
                required=transition.required.value,
            )
        try:
            user: User = self.store.get(EntityType.USER, actor_id)
        except NotFound:
            raise NotFound(f"User {actor_id} not found", entity_type=EntityType.USER.value, entity_id=actor_id) from None
        result = check_capability(user, transition.required)
        if not result.allowed:
            raise MissingCapability(
                f"User {actor_id} cannot {transition.action} audit reports: {result.reason}",
                action=transition.action,
                actor_id=actor_id,
                missing_capabilities=result.missing_capabilities,
            )

    def _notify_reviewers(self, report: AuditReport, version: AuditReportVersion) -> None:
        self.dispatcher.notify_role(
            REVIEWER_ROLE,
            "Audit report submitted",
            f"Version {version.version_number} of '{report.title}' was submitted for review.",
            NotificationPriority.NORMAL,
            report.ref(),
        )
