# SPDX-License-Identifier: Apache-2.0

"""
Workflow error taxonomy.

All errors are raised synchronously to the caller. Only ConcurrentModification
is retryable: it signals a lost read-modify-write race, not a logical error.
"""

from enum import Enum
from typing import Any, Optional, Type, TypeVar


E = TypeVar("E", bound=Enum)


class WorkflowError(Exception):
    """Base class for workflow core exceptions."""

    status_code = 500
    error_type = "workflow-error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "type": self.error_type,
            "detail": self.message,
            "retryable": self.retryable,
            **{k: [str(i) for i in v] if isinstance(v, list) else str(v) for k, v in self.details.items()},
        }


class InvalidTransition(WorkflowError):
    """Entity is not in a state that permits the requested action."""

    status_code = 409
    error_type = "invalid-transition"


class IneligibleInspector(InvalidTransition):
    """Target user does not hold an inspector-capable role."""

    error_type = "ineligible-inspector"


class MissingCapability(InvalidTransition):
    """Acting user's role does not grant the capability an edge requires."""

    status_code = 403
    error_type = "missing-capability"


class InvalidEnumValue(WorkflowError):
    """Unrecognized status, compliance or risk value."""

    status_code = 422
    error_type = "invalid-enum-value"


class NotFound(WorkflowError):
    """Entity id unknown to the store."""

    status_code = 404
    error_type = "resource-not-found"


class ConcurrentModification(WorkflowError):
    """Lost the race on a read-modify-write against the store."""

    status_code = 409
    error_type = "concurrent-modification"
    retryable = True


class CannotDeleteLatest(WorkflowError):
    """Attempted deletion of the authoritative (highest-numbered) version."""

    status_code = 409
    error_type = "cannot-delete-latest"


def parse_enum(enum_cls: Type[E], value: Any, field: str) -> E:
    """
    Coerce a raw value into a member of a closed enumeration.

    Raises:
        InvalidEnumValue: if the value is not a member
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidEnumValue(
            f"Invalid {field}: {value!r} (allowed: {allowed})",
            field=field,
            value=value,
        ) from None


def parse_optional_enum(enum_cls: Type[E], value: Any, field: str) -> Optional[E]:
    if value is None or value == "":
        return None
    return parse_enum(enum_cls, value, field)
