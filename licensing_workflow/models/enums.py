# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Enumeration types for the licensing workflow core.
"""

from enum import Enum


class RequestStatus(str, Enum):
    """License request workflow status enumeration."""
    DRAFT = "draft"
    NEW_REQUEST = "new_request"
    ACCEPTED = "accepted"
    ASSIGNED = "assigned"
    APPOINTMENT = "appointment"
    INSPECTING = "inspecting"
    INSPECTION_DONE = "inspection_done"
    DOCUMENT_EDIT = "document_edit"
    REPORT_APPROVED = "report_approved"
    APPROVED = "approved"
    REJECTED = "rejected"
    REJECTED_FINAL = "rejected_final"


class ReportStatus(str, Enum):
    """Audit report and audit report version status enumeration."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_EDIT = "needs_edit"


class ComplianceStatus(str, Enum):
    """Compliance verdict recorded on an audit report version."""
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non_compliant"
    PARTIALLY_COMPLIANT = "partially_compliant"


class RiskLevel(str, Enum):
    """Risk level recorded on an audit report version."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class LicenseType(str, Enum):
    """Kinds of license applications."""
    NEW = "new"
    RENEW = "renew"
    EXPAND = "expand"
    REDUCE = "reduce"
    MODIFY = "modify"
    CANCEL = "cancel"


class UserRole(str, Enum):
    """Closed set of roles taking part in the approval pipeline."""
    USER = "user"
    ADMIN = "admin"
    DEDE_HEAD = "dede_head"
    DEDE_STAFF = "dede_staff"
    DEDE_CONSULT = "dede_consult"
    AUDITOR = "auditor"


class Capability(str, Enum):
    """Actions a role may be entitled to perform."""
    INTAKE = "intake"
    INSPECT = "inspect"
    REVIEW = "review"
    ASSIGN = "assign"
    APPROVE_LICENSE = "approve_license"
    SUPERVISE = "supervise"


class EntityType(str, Enum):
    """Entity kinds addressable through an entity reference."""
    LICENSE_REQUEST = "license_request"
    AUDIT_REPORT = "audit_report"
    AUDIT_REPORT_VERSION = "audit_report_version"
    DEADLINE_REMINDER = "deadline_reminder"
    USER = "user"
    SERVICE_FLOW_LOG = "service_flow_log"


class DeadlineType(str, Enum):
    """What a deadline reminder is counting down to."""
    REQUEST = "request"
    APPOINTMENT = "appointment"
    REPORT_REVIEW = "report_review"


class NotificationPriority(str, Enum):
    """Notification priority levels."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class SchedulerState(str, Enum):
    """Lifecycle state of the deadline scheduler."""
    STOPPED = "stopped"
    RUNNING = "running"
