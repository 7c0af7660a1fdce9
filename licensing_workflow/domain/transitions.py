# SPDX-License-Identifier: Apache-2.0

"""
Fixed transition tables for license requests and audit report versions.

The tables are not configurable at runtime. A status may only change along an
edge listed here. Each edge names the capability its actor must hold; guards
that need more than status and role (audit outcomes, assignee eligibility) are
evaluated by the workflow components before the edge is taken.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Tuple, Type
from enum import Enum
from .errors import InvalidTransition
from .authorization import has_capability
from ..models.enums import Capability, RequestStatus, ReportStatus, UserRole


@dataclass(frozen=True)
class Transition:
    """A single legal edge of a transition table."""
    action: str
    from_status: Enum
    to_status: Enum
    description: str
    required: Optional[Capability] = None

    def allows(self, role: UserRole) -> bool:
        return self.required is None or has_capability(role, self.required)


def _table(*rows: Tuple[str, Tuple[Enum, ...], Enum, Optional[Capability], str]) -> Tuple[Transition, ...]:
    return tuple(
        Transition(action, source, target, description, required)
        for action, sources, target, required, description in rows
        for source in sources
    )


S = RequestStatus
C = Capability

REQUEST_TRANSITIONS = _table(
    ("submit", (S.DRAFT,), S.NEW_REQUEST, None, "Submit request for intake"),
    ("accept", (S.NEW_REQUEST,), S.ACCEPTED, C.INTAKE, "Accept request for processing"),
    ("reject", (S.NEW_REQUEST,), S.REJECTED, C.INTAKE, "Reject request at intake"),
    ("assign_inspector", (S.ACCEPTED, S.DOCUMENT_EDIT), S.ASSIGNED, C.ASSIGN, "Assign an inspector"),
    ("set_appointment", (S.ASSIGNED,), S.APPOINTMENT, C.INSPECT, "Schedule the site visit"),
    ("start_inspection", (S.APPOINTMENT,), S.INSPECTING, C.INSPECT, "Start site inspection"),
    ("complete_inspection", (S.INSPECTING,), S.INSPECTION_DONE, C.INSPECT, "Complete site inspection"),
    ("request_document_edit", (S.INSPECTION_DONE,), S.DOCUMENT_EDIT, C.REVIEW, "Send documents back for editing"),
    ("approve_report", (S.DOCUMENT_EDIT,), S.REPORT_APPROVED, C.REVIEW, "Certify the audit report"),
    ("approve", (S.REPORT_APPROVED, S.INSPECTION_DONE), S.APPROVED, C.APPROVE_LICENSE, "Approve the license"),
    ("reject_final", (S.INSPECTION_DONE, S.REPORT_APPROVED), S.REJECTED_FINAL, C.APPROVE_LICENSE, "Reject during final review"),
)

R = ReportStatus

VERSION_TRANSITIONS = _table(
    ("submit", (R.DRAFT,), R.SUBMITTED, None, "Submit version for review"),
    ("send_for_review", (R.SUBMITTED,), R.UNDER_REVIEW, C.REVIEW, "Take version into review"),
    ("approve", (R.SUBMITTED, R.UNDER_REVIEW), R.APPROVED, C.REVIEW, "Approve version"),
    ("reject", (R.SUBMITTED, R.UNDER_REVIEW), R.REJECTED, C.REVIEW, "Reject version"),
    ("request_edit", (R.SUBMITTED, R.UNDER_REVIEW), R.NEEDS_EDIT, C.REVIEW, "Ask the author for a new version"),
)

del S, R, C


class TransitionTable:
    """Lookup helpers over one fixed table."""

    def __init__(self, name: str, status_type: Type[Enum], transitions: Tuple[Transition, ...]):
        self.name = name
        self.status_type = status_type
        self._by_key: Dict[Tuple[str, Enum], Transition] = {
            (t.action, t.from_status): t for t in transitions
        }
        self._edges: FrozenSet[Tuple[Enum, Enum]] = frozenset(
            (t.from_status, t.to_status) for t in transitions
        )
        self._transitions = transitions

    def resolve(self, action: str, current: Enum) -> Transition:
        """
        Find the edge an action takes from the current status.

        Raises:
            InvalidTransition: if the action is not legal from the current status
        """
        transition = self._by_key.get((action, current))
        if transition is None:
            legal_from = sorted(
                t.from_status.value for t in self._transitions if t.action == action
            )
            raise InvalidTransition(
                f"Cannot {action} {self.name} in status {current.value}"
                f" (allowed from: {', '.join(legal_from) or 'nowhere'})",
                action=action,
                current_status=current.value,
            )
        return transition

    def can_transition(self, from_status: Enum, to_status: Enum) -> bool:
        return (from_status, to_status) in self._edges

    def actions_from(self, status: Enum, role: Optional[UserRole] = None) -> List[str]:
        """Actions legal from a status, limited to those the role may take when given."""
        return [
            t.action for t in self._transitions
            if t.from_status == status and (role is None or t.allows(role))
        ]

    def next_states(self, status: Enum) -> List[Enum]:
        seen: List[Enum] = []
        for t in self._transitions:
            if t.from_status == status and t.to_status not in seen:
                seen.append(t.to_status)
        return seen

    def is_terminal(self, status: Enum) -> bool:
        return not self.actions_from(status)

    def edges(self) -> FrozenSet[Tuple[Enum, Enum]]:
        return self._edges


REQUEST_TABLE = TransitionTable("license request", RequestStatus, REQUEST_TRANSITIONS)
VERSION_TABLE = TransitionTable("audit report version", ReportStatus, VERSION_TRANSITIONS)
