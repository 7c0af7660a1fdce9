# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Pytest configuration and fixtures.
"""

import os
import threading
import pytest
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from licensing_workflow.domain.audit_reports import AuditVersionWorkflow
from licensing_workflow.domain.requests import RequestStateMachine
from licensing_workflow.models.entities import LicenseRequest, User
from licensing_workflow.models.enums import RequestStatus, UserRole
from licensing_workflow.services.notifications import NotificationDispatcher, NotificationSink
from licensing_workflow.services.scheduler import DeadlineScheduler, SchedulerConfig
from licensing_workflow.services.store import InMemoryEntityStore
from licensing_workflow.utils.clock import FixedClock

# Set test environment
os.environ['ENVIRONMENT'] = 'test'
os.environ['OTEL_ENABLED'] = 'false'


class RecordingSink(NotificationSink):
    """Sink that keeps every notification; can be told to fail."""

    def __init__(self):
        self.sent: List[Dict] = []
        self.fail_for: Optional[Callable[[Dict], bool]] = None
        self._lock = threading.Lock()

    def _record(self, entry: Dict) -> None:
        if self.fail_for is not None and self.fail_for(entry):
            raise ConnectionError("sink unavailable")
        with self._lock:
            self.sent.append(entry)

    def notify_user(self, user_id, title, message, priority, entity):
        self._record({"user_id": user_id, "role": None, "title": title, "message": message,
                      "priority": priority, "entity": entity})

    def notify_role(self, role, title, message, priority, entity):
        self._record({"user_id": None, "role": role, "title": title, "message": message,
                      "priority": priority, "entity": entity})

    def to_user(self, user_id: str) -> List[Dict]:
        return [entry for entry in self.sent if entry["user_id"] == user_id]

    def to_role(self, role: UserRole) -> List[Dict]:
        return [entry for entry in self.sent if entry["role"] == role]

    def titled(self, fragment: str) -> List[Dict]:
        return [entry for entry in self.sent if fragment in entry["title"]]


@pytest.fixture
def clock():
    """Clock frozen at 2024-01-01 00:00 UTC."""
    return FixedClock(datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def dispatcher(sink):
    """Inline dispatcher so notifications are visible as soon as a call returns."""
    return NotificationDispatcher(sink)


@pytest.fixture
def users(store) -> Dict[str, User]:
    """One stored user per role, keyed by a short name."""
    people = {
        "applicant": User(name="Applicant", email="applicant@example.com", role=UserRole.USER),
        "admin": User(name="Intake Admin", email="admin@example.com", role=UserRole.ADMIN),
        "head": User(name="Department Head", email="head@example.com", role=UserRole.DEDE_HEAD),
        "staff": User(name="Department Staff", email="staff@example.com", role=UserRole.DEDE_STAFF),
        "consult": User(name="Consultant", email="consult@example.com", role=UserRole.DEDE_CONSULT),
        "auditor": User(name="Auditor", email="auditor@example.com", role=UserRole.AUDITOR),
    }
    for user in people.values():
        store.insert(user)
    return people


@pytest.fixture
def machine(store, dispatcher, clock):
    return RequestStateMachine(store, dispatcher, clock)


@pytest.fixture
def audit(store, dispatcher, clock):
    return AuditVersionWorkflow(store, dispatcher, clock)


@pytest.fixture
def scheduler(store, dispatcher, clock):
    config = SchedulerConfig(overdue_interval=0.05, reminder_interval=0.05, stop_timeout=5)
    instance = DeadlineScheduler(store, dispatcher, clock, config)
    yield instance
    instance.stop()


@pytest.fixture
def advance(machine, users):
    """
    Create a request and walk it forward to the given status.

    Only statuses on the main path up to inspection_done are supported.
    """
    steps = [
        (RequestStatus.NEW_REQUEST, lambda rid: machine.submit(rid, users["applicant"].id)),
        (RequestStatus.ACCEPTED, lambda rid: machine.accept(rid, users["admin"].id)),
        (RequestStatus.ASSIGNED, lambda rid: machine.assign_inspector(rid, users["consult"].id, users["admin"].id)),
        (RequestStatus.APPOINTMENT, lambda rid: machine.set_appointment(
            rid, datetime(2024, 1, 20, 10, 0, tzinfo=timezone.utc), location="Plant A",
            actor_id=users["consult"].id)),
        (RequestStatus.INSPECTING, lambda rid: machine.start_inspection(rid, users["consult"].id)),
        (RequestStatus.INSPECTION_DONE, lambda rid: machine.complete_inspection(rid, users["consult"].id)),
    ]

    def _advance(target: RequestStatus, title: str = "Solar farm expansion") -> LicenseRequest:
        request = machine.create_request(users["applicant"].id, title)
        if target == RequestStatus.DRAFT:
            return request
        for status, step in steps:
            request = step(request.id)
            if status == target:
                return request
        raise ValueError(f"Cannot advance to {target}")

    return _advance
