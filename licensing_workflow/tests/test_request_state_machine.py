# SPDX-License-Identifier: Apache-2.0

"""
Tests for the license request state machine.
"""

import threading
import pytest
from datetime import date, datetime, time, timezone

from licensing_workflow.domain.authorization import INTAKE_ROLE, FINAL_REVIEWER_ROLE
from licensing_workflow.domain.errors import (
    ConcurrentModification, IneligibleInspector, InvalidEnumValue, InvalidTransition, MissingCapability, NotFound
)
from licensing_workflow.domain.requests import RequestStateMachine
from licensing_workflow.models.enums import DeadlineType, EntityType, LicenseType, RequestStatus, UserRole
from licensing_workflow.services.notifications import NotificationDispatcher
from licensing_workflow.services.store import InMemoryEntityStore


def approve_audit_report(audit, request, users, compliance="compliant"):
    report, version = audit.create_report(
        request.id, "inspection-1", users["consult"].id,
        content={"findings": "Meters calibrated", "compliance_status": compliance, "risk_level": "low"},
    )
    audit.submit(version.id, users["consult"].id)
    audit.approve(version.id, users["staff"].id, "Looks good")
    return report


class TestCreateRequest:
    """Test request creation."""

    def test_deadline_is_ninety_days_after_creation(self, machine, users, clock):
        request = machine.create_request(users["applicant"].id, "Solar rooftop")

        assert request.status == RequestStatus.DRAFT
        assert request.created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert request.deadline == datetime(2024, 3, 31, tzinfo=timezone.utc)
        assert request.revision == 1
        assert request.request_number.startswith("REQ-20240101-")

    def test_reminders_are_created_with_the_request(self, machine, store, users):
        request = machine.create_request(users["applicant"].id, "Solar rooftop")

        reminders = store.find(EntityType.DEADLINE_REMINDER, entity=request.ref())
        assert sorted(r.reminder_days for r in reminders) == [1, 3]
        assert all(r.deadline_date == request.deadline for r in reminders)
        assert all(r.fired_at is None for r in reminders)

    def test_creation_is_logged(self, machine, users):
        request = machine.create_request(users["applicant"].id, "Solar rooftop")

        history = machine.history(request.id)
        assert len(history) == 1
        assert history[0].previous_status is None
        assert history[0].new_status == RequestStatus.DRAFT

    def test_unknown_license_type(self, machine, store, users):
        with pytest.raises(InvalidEnumValue):
            machine.create_request(users["applicant"].id, "Solar rooftop", license_type="transfer")
        assert store.find(EntityType.LICENSE_REQUEST) == []

    def test_license_type_from_string(self, machine, users):
        request = machine.create_request(users["applicant"].id, "Solar rooftop", license_type="renew")
        assert request.license_type == LicenseType.RENEW


class TestIntake:
    """Test submit, accept and reject."""

    def test_accept_from_draft_is_invalid(self, machine, users):
        request = machine.create_request(users["applicant"].id, "Hydro plant")

        with pytest.raises(InvalidTransition):
            machine.accept(request.id, users["admin"].id)
        assert machine.get(request.id).status == RequestStatus.DRAFT

    def test_submit_notifies_intake(self, machine, users, sink):
        request = machine.create_request(users["applicant"].id, "Hydro plant")
        request = machine.submit(request.id, users["applicant"].id)

        assert request.status == RequestStatus.NEW_REQUEST
        assert len(sink.to_role(INTAKE_ROLE)) == 1

    def test_submit_twice_is_invalid(self, machine, users):
        request = machine.create_request(users["applicant"].id, "Hydro plant")
        machine.submit(request.id)
        with pytest.raises(InvalidTransition):
            machine.submit(request.id)

    def test_accept_notifies_applicant(self, advance, sink, users):
        request = advance(RequestStatus.ACCEPTED)

        assert request.status == RequestStatus.ACCEPTED
        assert sink.titled("Request accepted")[0]["user_id"] == users["applicant"].id

    def test_reject_requires_reason(self, advance, machine, users):
        request = advance(RequestStatus.NEW_REQUEST)

        with pytest.raises(InvalidTransition):
            machine.reject(request.id, "   ", users["admin"].id)
        assert machine.get(request.id).status == RequestStatus.NEW_REQUEST

    def test_reject_is_terminal(self, advance, machine, sink, users):
        request = advance(RequestStatus.NEW_REQUEST)
        request = machine.reject(request.id, "Missing land title", users["admin"].id)

        assert request.status == RequestStatus.REJECTED
        assert request.rejection_reason == "Missing land title"
        assert machine.available_actions(request) == []
        assert "Missing land title" in sink.titled("Request rejected")[0]["message"]

    def test_unknown_request(self, machine):
        with pytest.raises(NotFound):
            machine.submit("does-not-exist")


class TestAssignInspector:
    """Test inspector assignment."""

    def test_assign(self, advance, machine, users, sink, clock):
        request = advance(RequestStatus.ACCEPTED)
        request = machine.assign_inspector(request.id, users["consult"].id, users["admin"].id)

        assert request.status == RequestStatus.ASSIGNED
        assert request.assigned_inspector_id == users["consult"].id
        assert request.assigned_by_id == users["admin"].id
        assert request.assigned_at == clock.now()
        assert len(sink.to_user(users["consult"].id)) == 1

    def test_target_must_be_inspector_capable(self, advance, machine, users):
        request = advance(RequestStatus.ACCEPTED)

        with pytest.raises(IneligibleInspector):
            machine.assign_inspector(request.id, users["applicant"].id, users["admin"].id)
        stored = machine.get(request.id)
        assert stored.status == RequestStatus.ACCEPTED
        assert stored.assigned_inspector_id is None

    def test_assigner_needs_capability(self, advance, machine, users):
        request = advance(RequestStatus.ACCEPTED)

        with pytest.raises(InvalidTransition):
            machine.assign_inspector(request.id, users["consult"].id, users["staff"].id)

    def test_unknown_inspector(self, advance, machine, users):
        request = advance(RequestStatus.ACCEPTED)

        with pytest.raises(NotFound):
            machine.assign_inspector(request.id, "ghost", users["admin"].id)

    def test_assign_before_accept_is_invalid(self, advance, machine, users):
        request = advance(RequestStatus.NEW_REQUEST)

        with pytest.raises(InvalidTransition):
            machine.assign_inspector(request.id, users["consult"].id, users["admin"].id)

    def test_concurrent_assignments_one_wins(self, dispatcher, clock, users):
        class BarrierStore(InMemoryEntityStore):
            """Holds readers of a request until both have read the same revision."""

            def __init__(self):
                super().__init__()
                self.barrier = None

            def get(self, entity_type, entity_id):
                entity = super().get(entity_type, entity_id)
                if self.barrier is not None and entity_type == EntityType.LICENSE_REQUEST:
                    self.barrier.wait()
                return entity

        store = BarrierStore()
        for user in users.values():
            store.insert(user.model_copy())
        machine = RequestStateMachine(store, dispatcher, clock)
        request = machine.create_request(users["applicant"].id, "Wind park")
        machine.submit(request.id)
        machine.accept(request.id, users["admin"].id)

        store.barrier = threading.Barrier(2, timeout=5)
        outcomes = {}

        def assign(name, inspector_id):
            try:
                outcomes[name] = machine.assign_inspector(request.id, inspector_id, users["admin"].id)
            except Exception as e:
                outcomes[name] = e

        threads = [
            threading.Thread(target=assign, args=("consult", users["consult"].id)),
            threading.Thread(target=assign, args=("auditor", users["auditor"].id)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)
        store.barrier = None

        errors = [o for o in outcomes.values() if isinstance(o, Exception)]
        successes = [o for o in outcomes.values() if not isinstance(o, Exception)]
        assert len(successes) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], ConcurrentModification)
        assert errors[0].retryable

        stored = machine.get(request.id)
        assert stored.status == RequestStatus.ASSIGNED
        assert stored.assigned_inspector_id == successes[0].assigned_inspector_id
        assert [log.action for log in machine.history(request.id)].count("assign_inspector") == 1


class TestActorCapabilities:
    """Every gated edge checks the acting user's role."""

    def test_applicant_cannot_accept(self, advance, machine, users, sink):
        request = advance(RequestStatus.NEW_REQUEST)
        sent = len(sink.sent)

        with pytest.raises(MissingCapability) as exc_info:
            machine.accept(request.id, users["applicant"].id)

        assert exc_info.value.status_code == 403
        assert exc_info.value.details["missing_capabilities"] == ["intake"]
        assert machine.get(request.id).status == RequestStatus.NEW_REQUEST
        assert "accept" not in [log.action for log in machine.history(request.id)]
        assert len(sink.sent) == sent

    def test_applicant_cannot_reject_final(self, advance, machine, users):
        request = advance(RequestStatus.INSPECTION_DONE)

        with pytest.raises(InvalidTransition):
            machine.reject_final(request.id, "Self-rejection", users["applicant"].id)
        stored = machine.get(request.id)
        assert stored.status == RequestStatus.INSPECTION_DONE
        assert stored.rejection_reason is None

    def test_inspector_cannot_grant_license(self, advance, machine, audit, users):
        request = advance(RequestStatus.INSPECTION_DONE)
        approve_audit_report(audit, request, users)

        with pytest.raises(MissingCapability):
            machine.approve(request.id, users["consult"].id)
        assert machine.approve(request.id, users["staff"].id).status == RequestStatus.APPROVED

    def test_intake_by_admin_or_head(self, advance, machine, users):
        first = advance(RequestStatus.NEW_REQUEST)
        second = advance(RequestStatus.NEW_REQUEST, title="Second plant")

        assert machine.accept(first.id, users["head"].id).status == RequestStatus.ACCEPTED
        with pytest.raises(MissingCapability):
            machine.accept(second.id, users["staff"].id)

    def test_gated_action_needs_an_actor(self, advance, machine):
        request = advance(RequestStatus.NEW_REQUEST)

        with pytest.raises(MissingCapability):
            machine.accept(request.id)
        assert machine.get(request.id).status == RequestStatus.NEW_REQUEST

    def test_unknown_actor(self, advance, machine):
        request = advance(RequestStatus.NEW_REQUEST)
        with pytest.raises(NotFound):
            machine.accept(request.id, "ghost")

    def test_status_is_checked_before_role(self, machine, users):
        request = machine.create_request(users["applicant"].id, "Hydro plant")

        with pytest.raises(InvalidTransition) as exc_info:
            machine.accept(request.id, users["applicant"].id)
        assert not isinstance(exc_info.value, MissingCapability)

    def test_available_actions_by_role(self, advance, machine):
        new = advance(RequestStatus.NEW_REQUEST)
        assert machine.available_actions(new, UserRole.USER) == []
        assert machine.available_actions(new, UserRole.ADMIN) == ["accept", "reject"]

        done = advance(RequestStatus.INSPECTION_DONE, title="Second plant")
        assert machine.available_actions(done, UserRole.DEDE_CONSULT) == []
        assert machine.available_actions(done, UserRole.AUDITOR) == ["request_document_edit"]
        assert machine.available_actions(done, UserRole.DEDE_STAFF) == ["request_document_edit", "reject_final"]


class TestInspection:
    """Test appointment and inspection steps."""

    def test_set_appointment_with_date_and_time(self, advance, machine, store, users):
        request = advance(RequestStatus.ASSIGNED)
        request = machine.set_appointment(
            request.id, date(2024, 2, 1), time(13, 30), "Plant B", actor_id=users["consult"].id
        )

        assert request.status == RequestStatus.APPOINTMENT
        assert request.appointment_date == datetime(2024, 2, 1, 13, 30, tzinfo=timezone.utc)
        assert request.appointment_location == "Plant B"

        reminders = store.find(EntityType.DEADLINE_REMINDER, deadline_type=DeadlineType.APPOINTMENT)
        assert len(reminders) == 1
        assert reminders[0].deadline_date == request.appointment_date
        assert reminders[0].reminder_days == 1

    def test_set_appointment_requires_date(self, advance, machine, users):
        request = advance(RequestStatus.ASSIGNED)
        with pytest.raises(InvalidTransition):
            machine.set_appointment(request.id, None, actor_id=users["consult"].id)

    def test_inspection_timestamps(self, advance, machine, clock, users):
        request = advance(RequestStatus.APPOINTMENT)
        clock.advance(days=19)
        request = machine.start_inspection(request.id, users["consult"].id)
        assert request.inspection_date == clock.now()

        clock.advance(hours=4)
        request = machine.complete_inspection(request.id, users["consult"].id)
        assert request.status == RequestStatus.INSPECTION_DONE
        assert request.completion_date == clock.now()

    def test_cannot_skip_appointment(self, advance, machine, users):
        request = advance(RequestStatus.ASSIGNED)
        with pytest.raises(InvalidTransition):
            machine.start_inspection(request.id, users["consult"].id)


class TestFinalReview:
    """Test approval paths."""

    def test_approve_from_inspection_done_needs_compliant_report(self, advance, machine, audit, users):
        request = advance(RequestStatus.INSPECTION_DONE)

        with pytest.raises(InvalidTransition):
            machine.approve(request.id, users["head"].id)
        assert "approve" not in machine.available_actions(request.id)

        approve_audit_report(audit, request, users, compliance="non_compliant")
        with pytest.raises(InvalidTransition):
            machine.approve(request.id, users["head"].id)

    def test_approve_from_inspection_done(self, advance, machine, audit, users, sink):
        request = advance(RequestStatus.INSPECTION_DONE)
        approve_audit_report(audit, request, users)

        assert "approve" in machine.available_actions(request.id)
        request = machine.approve(request.id, users["head"].id)
        assert request.status == RequestStatus.APPROVED
        assert request.is_terminal()
        assert sink.titled("License approved")[0]["user_id"] == users["applicant"].id

    def test_document_edit_path(self, advance, machine, audit, users, sink):
        request = advance(RequestStatus.INSPECTION_DONE)
        request = machine.request_document_edit(request.id, "Attach single-line diagram", users["staff"].id)
        assert request.status == RequestStatus.DOCUMENT_EDIT
        assert request.assigned_inspector_id == users["consult"].id

        with pytest.raises(InvalidTransition):
            machine.approve_report(request.id, users["staff"].id)

        approve_audit_report(audit, request, users)
        request = machine.approve_report(request.id, users["staff"].id)
        assert request.status == RequestStatus.REPORT_APPROVED
        assert sink.to_role(FINAL_REVIEWER_ROLE)

        request = machine.approve(request.id, users["head"].id)
        assert request.status == RequestStatus.APPROVED

    def test_reassign_after_document_edit(self, advance, machine, users):
        request = advance(RequestStatus.INSPECTION_DONE)
        machine.request_document_edit(request.id, actor_id=users["staff"].id)
        request = machine.assign_inspector(request.id, users["auditor"].id, users["head"].id)
        assert request.status == RequestStatus.ASSIGNED
        assert request.assigned_inspector_id == users["auditor"].id

    def test_reject_final(self, advance, machine, users):
        request = advance(RequestStatus.INSPECTION_DONE)
        with pytest.raises(InvalidTransition):
            machine.reject_final(request.id, "", users["head"].id)
        request = machine.reject_final(request.id, "Grid connection unsafe", users["head"].id)
        assert request.status == RequestStatus.REJECTED_FINAL
        assert request.rejection_reason == "Grid connection unsafe"

    def test_deadline_never_changes(self, advance, machine, audit, users):
        request = advance(RequestStatus.INSPECTION_DONE)
        approve_audit_report(audit, request, users)
        approved = machine.approve(request.id, users["head"].id)
        assert approved.deadline == datetime(2024, 3, 31, tzinfo=timezone.utc)


class TestHistoryAndDeletion:
    """Test the transition log, available actions and draft deletion."""

    def test_history_follows_transitions(self, machine, users, clock):
        request = machine.create_request(users["applicant"].id, "Biogas")
        clock.advance(hours=1)
        machine.submit(request.id, users["applicant"].id)
        clock.advance(hours=1)
        machine.accept(request.id, users["admin"].id)

        history = machine.history(request.id)
        assert [(h.previous_status, h.new_status) for h in history] == [
            (None, RequestStatus.DRAFT),
            (RequestStatus.DRAFT, RequestStatus.NEW_REQUEST),
            (RequestStatus.NEW_REQUEST, RequestStatus.ACCEPTED),
        ]
        assert history[-1].changed_by == users["admin"].id

    def test_available_actions(self, advance, machine):
        assert machine.available_actions(advance(RequestStatus.DRAFT)) == ["submit"]
        assert machine.available_actions(advance(RequestStatus.NEW_REQUEST)) == ["accept", "reject"]
        assert machine.available_actions(advance(RequestStatus.INSPECTION_DONE)) == [
            "request_document_edit", "reject_final"
        ]

    def test_delete_draft(self, machine, store, users):
        request = machine.create_request(users["applicant"].id, "Biogas")
        machine.delete_draft(request.id, users["applicant"].id)

        with pytest.raises(NotFound):
            machine.get(request.id)
        assert store.find(EntityType.DEADLINE_REMINDER) == []
        assert machine.history(request.id) == []

    def test_submitted_request_cannot_be_deleted(self, advance, machine):
        request = advance(RequestStatus.NEW_REQUEST)
        with pytest.raises(InvalidTransition):
            machine.delete_draft(request.id)

    def test_delete_draft_is_all_or_nothing(self, machine, store, users, monkeypatch):
        request = machine.create_request(users["applicant"].id, "Biogas")
        original = store.find
        raced = []

        def find_then_submit(entity_type, **filters):
            found = original(entity_type, **filters)
            if entity_type == EntityType.DEADLINE_REMINDER and not raced:
                raced.append(True)
                machine.submit(request.id, users["applicant"].id)
            return found

        monkeypatch.setattr(store, "find", find_then_submit)
        with pytest.raises(ConcurrentModification):
            machine.delete_draft(request.id, users["applicant"].id)
        monkeypatch.undo()

        assert machine.get(request.id).status == RequestStatus.NEW_REQUEST
        assert len(store.find(EntityType.DEADLINE_REMINDER, entity=request.ref())) == 2
        assert len(machine.history(request.id)) == 2


class TestNotificationFailures:
    """Notification failures never undo a transition."""

    def test_failing_sink_does_not_block(self, machine, store, sink, users, clock):
        sink.fail_for = lambda entry: True
        request = machine.create_request(users["applicant"].id, "Biogas")
        request = machine.submit(request.id)

        assert machine.get(request.id).status == RequestStatus.NEW_REQUEST
        assert machine.dispatcher.statistics()["failed"] == 1
        assert sink.sent == []

    def test_failing_sink_with_executor(self, store, sink, users, clock):
        from concurrent.futures import ThreadPoolExecutor

        sink.fail_for = lambda entry: entry["role"] is not None
        with ThreadPoolExecutor(max_workers=2) as executor:
            dispatcher = NotificationDispatcher(sink, executor)
            machine = RequestStateMachine(store, dispatcher, clock)
            request = machine.create_request(users["applicant"].id, "Biogas")
            machine.submit(request.id)
            machine.accept(request.id, users["admin"].id)

        stats = dispatcher.statistics()
        assert stats == {"dispatched": 2, "delivered": 1, "failed": 1}
        assert machine.get(request.id).status == RequestStatus.ACCEPTED
