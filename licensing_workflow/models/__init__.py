# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Models package - Pydantic schemas for the licensing workflow.
"""

# Base models
from .base import BaseEntity, generate_object_id, utc_now

# Enumerations
from .enums import (
    RequestStatus,
    ReportStatus,
    ComplianceStatus,
    RiskLevel,
    LicenseType,
    UserRole,
    Capability,
    EntityType,
    DeadlineType,
    NotificationPriority,
    SchedulerState
)

# Core entities
from .entities import (
    EntityRef,
    User,
    LicenseRequest,
    AuditReport,
    AuditReportVersion,
    DeadlineReminder,
    ServiceFlowLog,
    TERMINAL_REQUEST_STATUSES,
    INSPECTOR_STATUSES
)

__all__ = [
    "BaseEntity",
    "generate_object_id",
    "utc_now",
    "RequestStatus",
    "ReportStatus",
    "ComplianceStatus",
    "RiskLevel",
    "LicenseType",
    "UserRole",
    "Capability",
    "EntityType",
    "DeadlineType",
    "NotificationPriority",
    "SchedulerState",
    "EntityRef",
    "User",
    "LicenseRequest",
    "AuditReport",
    "AuditReportVersion",
    "DeadlineReminder",
    "ServiceFlowLog",
    "TERMINAL_REQUEST_STATUSES",
    "INSPECTOR_STATUSES",
]
