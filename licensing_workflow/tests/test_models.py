# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Unit tests for Pydantic models.
"""

import pytest
from datetime import datetime, timedelta, timezone
from pydantic import ValidationError

from licensing_workflow.models.entities import (
    AuditReportVersion, DeadlineReminder, EntityRef, LicenseRequest, User
)
from licensing_workflow.models.enums import EntityType, ReportStatus, RequestStatus, UserRole

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_request(**overrides) -> LicenseRequest:
    data = {
        "applicant_id": "applicant-1",
        "request_number": "REQ-1",
        "title": "Biomass plant",
        "deadline": NOW + timedelta(days=90),
    }
    data.update(overrides)
    return LicenseRequest(**data)


class TestLicenseRequestModel:
    """Test LicenseRequest validation."""

    def test_defaults(self):
        request = make_request()
        assert request.status == RequestStatus.DRAFT
        assert request.is_draft()
        assert request.revision == 0
        assert request.is_overdue is False
        assert request.assigned_inspector_id is None

    def test_title_is_stripped_and_required(self):
        assert make_request(title="  Wind park  ").title == "Wind park"
        with pytest.raises(ValidationError):
            make_request(title="   ")

    def test_inspector_not_allowed_before_assignment(self):
        with pytest.raises(ValidationError) as exc_info:
            make_request(status=RequestStatus.ACCEPTED, assigned_inspector_id="inspector-1")
        assert "assigned_inspector_id must be empty" in str(exc_info.value)

    def test_inspector_allowed_once_assigned(self):
        request = make_request(status=RequestStatus.ASSIGNED, assigned_inspector_id="inspector-1")
        assert request.assigned_inspector_id == "inspector-1"

    def test_rejection_requires_reason(self):
        with pytest.raises(ValidationError):
            make_request(status=RequestStatus.REJECTED)
        assert make_request(status=RequestStatus.REJECTED, rejection_reason="Incomplete").is_terminal()

    def test_deadline_is_immutable(self):
        request = make_request()
        with pytest.raises(ValueError, match="immutable"):
            request.deadline = request.deadline + timedelta(days=1)

    def test_deadline_passed(self):
        request = make_request()
        assert not request.is_deadline_passed(NOW + timedelta(days=89))
        assert request.is_deadline_passed(NOW + timedelta(days=90, seconds=1))

    def test_invalid_status_string(self):
        with pytest.raises(ValidationError):
            make_request(status="overdue")


class TestAuditReportVersionModel:
    """Test AuditReportVersion outcome rules."""

    def base(self, **overrides):
        data = {"report_id": "report-1", "version_number": 1, "title": "v1", "submitted_by_id": "inspector-1"}
        data.update(overrides)
        return AuditReportVersion(**data)

    def test_version_number_starts_at_one(self):
        with pytest.raises(ValidationError):
            self.base(version_number=0)

    def test_approved_requires_approver(self):
        with pytest.raises(ValidationError):
            self.base(status=ReportStatus.APPROVED)
        assert self.base(status=ReportStatus.APPROVED, approved_by_id="staff-1").can_approve() is False

    def test_outcomes_are_exclusive(self):
        with pytest.raises(ValidationError) as exc_info:
            self.base(approved_by_id="staff-1", rejection_reason="Missing data")
        assert "both approved and rejected" in str(exc_info.value)

    def test_predicates_follow_status(self):
        draft = self.base()
        assert draft.can_submit() and not draft.can_review()
        submitted = self.base(status=ReportStatus.SUBMITTED)
        assert submitted.can_review() and submitted.can_approve() and submitted.can_request_edit()
        under_review = self.base(status=ReportStatus.UNDER_REVIEW)
        assert under_review.can_reject() and not under_review.can_submit()


class TestDeadlineReminderModel:
    """Test the reminder due window."""

    def reminder(self, days=3):
        return DeadlineReminder(
            entity=EntityRef(entity_type=EntityType.LICENSE_REQUEST, entity_id="request-1"),
            deadline_date=NOW + timedelta(days=10),
            reminder_days=days,
        )

    def test_due_window(self):
        reminder = self.reminder()
        assert reminder.remind_from == NOW + timedelta(days=7)
        assert not reminder.is_due(NOW + timedelta(days=6, hours=23))
        assert reminder.is_due(NOW + timedelta(days=7))
        assert reminder.is_due(NOW + timedelta(days=9, hours=23))
        assert not reminder.is_due(NOW + timedelta(days=10))

    def test_fired_reminder_is_not_due(self):
        reminder = self.reminder()
        reminder.fired_at = NOW + timedelta(days=7)
        assert not reminder.is_due(NOW + timedelta(days=8))

    def test_entity_ref_string(self):
        assert str(self.reminder().entity) == "license_request:request-1"


class TestUserModel:
    """Test User validation."""

    def test_email_normalized(self):
        user = User(name="Inspector", email="Inspector@Example.COM", role=UserRole.DEDE_CONSULT)
        assert user.email == "inspector@example.com"

    def test_invalid_email(self):
        with pytest.raises(ValidationError):
            User(name="Inspector", email="not-an-email")

    def test_unknown_role(self):
        with pytest.raises(ValidationError):
            User(name="Inspector", role="superuser")
