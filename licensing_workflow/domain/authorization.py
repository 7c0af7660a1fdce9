# SPDX-License-Identifier: Apache-2.0

"""
Role capability logic for the approval pipeline.

Roles form a closed enumeration; every guard asks for a capability instead of
comparing role names, so the mapping below is the only place roles are spelled out.
"""

from typing import Dict, FrozenSet, List
from dataclasses import dataclass, field
from ..models.enums import UserRole, Capability
from ..models.entities import User


ROLE_CAPABILITIES: Dict[UserRole, FrozenSet[Capability]] = {
    UserRole.USER: frozenset(),
    UserRole.ADMIN: frozenset({Capability.INTAKE, Capability.ASSIGN, Capability.SUPERVISE}),
    UserRole.DEDE_HEAD: frozenset({
        Capability.INTAKE,
        Capability.INSPECT,
        Capability.REVIEW,
        Capability.ASSIGN,
        Capability.APPROVE_LICENSE,
        Capability.SUPERVISE,
    }),
    UserRole.DEDE_STAFF: frozenset({
        Capability.INSPECT,
        Capability.REVIEW,
        Capability.APPROVE_LICENSE,
    }),
    UserRole.DEDE_CONSULT: frozenset({Capability.INSPECT}),
    UserRole.AUDITOR: frozenset({Capability.INSPECT, Capability.REVIEW}),
}

# Roles notified at each stage of the pipeline
INTAKE_ROLE = UserRole.ADMIN
REVIEWER_ROLE = UserRole.DEDE_STAFF
FINAL_REVIEWER_ROLE = UserRole.DEDE_HEAD
SUPERVISOR_ROLE = UserRole.DEDE_HEAD


@dataclass
class AuthorizationResult:
    """Result of a capability check."""
    allowed: bool
    reason: str = ""
    missing_capabilities: List[str] = field(default_factory=list)


def capabilities_for(role: UserRole) -> FrozenSet[Capability]:
    """Capability set granted to a role."""
    return ROLE_CAPABILITIES.get(UserRole(role), frozenset())


def has_capability(role: UserRole, capability: Capability) -> bool:
    return capability in capabilities_for(role)


def can_inspect(user: User) -> bool:
    return has_capability(user.role, Capability.INSPECT)


def can_review(user: User) -> bool:
    return has_capability(user.role, Capability.REVIEW)


def can_assign(user: User) -> bool:
    return has_capability(user.role, Capability.ASSIGN)


def check_capability(user: User, capability: Capability) -> AuthorizationResult:
    """
    Check if a user's role grants a capability.

    Args:
        user: User entity
        capability: Capability required by the guard

    Returns:
        AuthorizationResult indicating if the capability is granted
    """
    if has_capability(user.role, capability):
        return AuthorizationResult(allowed=True)

    return AuthorizationResult(
        allowed=False,
        reason=f"Role {user.role.value} lacks capability: {capability.value}",
        missing_capabilities=[capability.value]
    )


def roles_with(capability: Capability) -> List[UserRole]:
    """All roles granting a capability, in declaration order."""
    return [role for role in UserRole if capability in ROLE_CAPABILITIES[role]]
