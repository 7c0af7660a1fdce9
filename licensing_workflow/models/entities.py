# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Core entity models for the licensing workflow.
"""

from datetime import datetime, timedelta
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from .base import BaseEntity
from .enums import (
    RequestStatus,
    ReportStatus,
    ComplianceStatus,
    RiskLevel,
    LicenseType,
    UserRole,
    EntityType,
    DeadlineType,
)


TERMINAL_REQUEST_STATUSES = frozenset({
    RequestStatus.APPROVED,
    RequestStatus.REJECTED,
    RequestStatus.REJECTED_FINAL,
})

# Statuses in which a request may carry an assigned inspector
INSPECTOR_STATUSES = frozenset({
    RequestStatus.ASSIGNED,
    RequestStatus.APPOINTMENT,
    RequestStatus.INSPECTING,
    RequestStatus.INSPECTION_DONE,
    RequestStatus.DOCUMENT_EDIT,
    RequestStatus.REPORT_APPROVED,
    RequestStatus.APPROVED,
    RequestStatus.REJECTED_FINAL,
})


class EntityRef(BaseModel):
    """Polymorphic (type, id) reference resolved through the entity store."""

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType = Field(..., description="Referenced entity kind")
    entity_id: str = Field(..., min_length=1, description="Referenced entity identifier")

    def __str__(self) -> str:
        return f"{self.entity_type.value}:{self.entity_id}"


class User(BaseEntity):
    """Pipeline participant, looked up for role checks and notification routing."""

    name: str = Field(..., min_length=1, max_length=200, description="User full name")
    email: Optional[str] = Field(None, description="User email address")
    role: UserRole = Field(default=UserRole.USER, description="Pipeline role")

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        """Normalize email to lowercase."""
        if v is None:
            return v
        if '@' not in v:
            raise ValueError('Invalid email format')
        return v.strip().lower()


class LicenseRequest(BaseEntity):
    """Facility license application moving through the approval pipeline."""

    applicant_id: str = Field(..., description="User ID of the applicant")
    request_number: str = Field(..., min_length=1, description="Human-facing request number")
    license_type: LicenseType = Field(default=LicenseType.NEW, description="Kind of license application")
    title: str = Field(..., min_length=1, max_length=300, description="Request title")
    description: Optional[str] = Field(None, max_length=5000, description="Request description")
    status: RequestStatus = Field(default=RequestStatus.DRAFT, description="Workflow status")
    deadline: Optional[datetime] = Field(None, description="Processing deadline, set once at creation")
    assigned_inspector_id: Optional[str] = Field(None, description="Assigned inspector user ID")
    assigned_by_id: Optional[str] = Field(None, description="User ID who assigned the inspector")
    assigned_at: Optional[datetime] = Field(None, description="Assignment timestamp")
    appointment_date: Optional[datetime] = Field(None, description="Scheduled site visit")
    appointment_location: Optional[str] = Field(None, max_length=500, description="Site visit location")
    inspection_date: Optional[datetime] = Field(None, description="Inspection start timestamp")
    completion_date: Optional[datetime] = Field(None, description="Inspection completion timestamp")
    rejection_reason: Optional[str] = Field(None, description="Reason given when rejected")
    is_overdue: bool = Field(default=False, description="Overdue flag layered on top of status")
    overdue_at: Optional[datetime] = Field(None, description="When the overdue flag was raised")

    @field_validator('title')
    @classmethod
    def validate_title(cls, v):
        """Validate request title."""
        if not v.strip():
            raise ValueError('Request title cannot be empty')
        return v.strip()

    @model_validator(mode='after')
    def validate_status_fields(self):
        """Validate status-dependent fields."""
        if self.assigned_inspector_id and self.status not in INSPECTOR_STATUSES:
            raise ValueError(
                f'assigned_inspector_id must be empty while status is {self.status.value}'
            )

        if self.status in (RequestStatus.REJECTED, RequestStatus.REJECTED_FINAL) and not self.rejection_reason:
            raise ValueError('Rejection reason is required when status is rejected')

        return self

    def __setattr__(self, name, value):
        if name == 'deadline' and self.deadline is not None and value != self.deadline:
            raise ValueError('deadline is immutable once set')
        super().__setattr__(name, value)

    def is_terminal(self) -> bool:
        """Check if the request reached an absorbing state."""
        return self.status in TERMINAL_REQUEST_STATUSES

    def is_draft(self) -> bool:
        return self.status == RequestStatus.DRAFT

    def can_be_assigned(self) -> bool:
        """Check if an inspector can be (re)assigned."""
        return self.status in (RequestStatus.ACCEPTED, RequestStatus.DOCUMENT_EDIT)

    def is_inspection_done(self) -> bool:
        return self.status == RequestStatus.INSPECTION_DONE

    def is_deadline_passed(self, now: datetime) -> bool:
        return self.deadline is not None and self.deadline < now

    def ref(self) -> EntityRef:
        return EntityRef(entity_type=EntityType.LICENSE_REQUEST, entity_id=self.id)


class AuditReport(BaseEntity):
    """Inspection audit report; its status mirrors the latest version."""

    request_id: str = Field(..., description="License request the report belongs to")
    inspection_id: str = Field(..., description="Inspection the report documents")
    inspector_id: str = Field(..., description="Inspector who authored the report")
    reviewer_id: Optional[str] = Field(None, description="Reviewer assigned to the report")
    title: str = Field(..., min_length=1, max_length=300, description="Report title")
    status: ReportStatus = Field(default=ReportStatus.DRAFT, description="Mirrors the latest version status")
    compliance_status: Optional[ComplianceStatus] = Field(None, description="Mirrors the latest version")
    risk_level: Optional[RiskLevel] = Field(None, description="Mirrors the latest version")
    latest_version_number: int = Field(default=0, ge=0, description="Highest version number issued")
    submitted_at: Optional[datetime] = Field(None, description="Last submission timestamp")
    reviewed_at: Optional[datetime] = Field(None, description="Last review timestamp")
    approved_at: Optional[datetime] = Field(None, description="Approval timestamp")

    def is_draft(self) -> bool:
        return self.status == ReportStatus.DRAFT

    def is_approved(self) -> bool:
        return self.status == ReportStatus.APPROVED

    def is_compliant(self) -> bool:
        return self.compliance_status == ComplianceStatus.COMPLIANT

    def ref(self) -> EntityRef:
        return EntityRef(entity_type=EntityType.AUDIT_REPORT, entity_id=self.id)


class AuditReportVersion(BaseEntity):
    """Snapshot of inspection findings; immutable once superseded."""

    report_id: str = Field(..., description="Owning audit report")
    version_number: int = Field(..., ge=1, description="Per-report sequence number")
    title: str = Field(..., min_length=1, max_length=300, description="Version title")
    content: Optional[str] = Field(None, description="Report body")
    findings: Optional[str] = Field(None, description="Inspection findings")
    recommendations: Optional[str] = Field(None, description="Recommendations")
    corrective_actions: Optional[str] = Field(None, description="Required corrective actions")
    compliance_status: Optional[ComplianceStatus] = Field(None, description="Compliance verdict")
    risk_level: Optional[RiskLevel] = Field(None, description="Assessed risk level")
    follow_up_required: bool = Field(default=False, description="Whether a follow-up visit is needed")
    follow_up_date: Optional[datetime] = Field(None, description="Follow-up visit date")
    file_attachments: List[str] = Field(default_factory=list, description="Stored attachment paths")
    status: ReportStatus = Field(default=ReportStatus.DRAFT, description="Version status")
    submitted_by_id: str = Field(..., description="User ID who authored the version")
    reviewed_by_id: Optional[str] = Field(None, description="User ID who took the version into review")
    approved_by_id: Optional[str] = Field(None, description="User ID who approved")
    rejection_reason: Optional[str] = Field(None, description="Reason for rejection")
    review_comments: Optional[str] = Field(None, description="Reviewer comments")

    @model_validator(mode='after')
    def validate_outcome(self):
        """Approval and rejection are mutually exclusive outcomes."""
        if self.approved_by_id and self.rejection_reason:
            raise ValueError('A version cannot be both approved and rejected')

        if self.status == ReportStatus.APPROVED and not self.approved_by_id:
            raise ValueError('approved_by_id is required when status is approved')

        if self.status == ReportStatus.REJECTED and not self.rejection_reason:
            raise ValueError('Rejection reason is required when status is rejected')

        return self

    def can_submit(self) -> bool:
        return self.status == ReportStatus.DRAFT

    def can_review(self) -> bool:
        return self.status == ReportStatus.SUBMITTED

    def can_approve(self) -> bool:
        return self.status in (ReportStatus.SUBMITTED, ReportStatus.UNDER_REVIEW)

    def can_reject(self) -> bool:
        return self.status in (ReportStatus.SUBMITTED, ReportStatus.UNDER_REVIEW)

    def can_request_edit(self) -> bool:
        return self.status in (ReportStatus.SUBMITTED, ReportStatus.UNDER_REVIEW)

    def ref(self) -> EntityRef:
        return EntityRef(entity_type=EntityType.AUDIT_REPORT_VERSION, entity_id=self.id)


class DeadlineReminder(BaseEntity):
    """At-most-once notification scheduled ahead of an entity deadline."""

    entity: EntityRef = Field(..., description="Entity whose deadline is tracked")
    deadline_type: DeadlineType = Field(default=DeadlineType.REQUEST, description="Deadline being tracked")
    deadline_date: datetime = Field(..., description="The deadline itself")
    reminder_days: int = Field(..., ge=0, le=365, description="Lead time before the deadline")
    fired_at: Optional[datetime] = Field(None, description="Set once the reminder was dispatched")

    @property
    def remind_from(self) -> datetime:
        return self.deadline_date - timedelta(days=self.reminder_days)

    def is_due(self, now: datetime) -> bool:
        """Inside the reminder window and not yet fired."""
        return self.fired_at is None and self.remind_from <= now < self.deadline_date

    def days_until_deadline(self, now: datetime) -> int:
        return (self.deadline_date - now).days


class ServiceFlowLog(BaseEntity):
    """Record of a single license request status change."""

    request_id: str = Field(..., description="License request that changed")
    previous_status: Optional[RequestStatus] = Field(None, description="Status before the change")
    new_status: RequestStatus = Field(..., description="Status after the change")
    action: str = Field(..., description="Workflow action that caused the change")
    changed_by: Optional[str] = Field(None, description="Acting user ID, None for the system")
    reason: Optional[str] = Field(None, description="Free-text reason or comment")
