"""Authenticated caller as seen by the billing engine."""

from dataclasses import dataclass, field
from typing import FrozenSet, Optional
from uuid import UUID

from pharmabill.models import RoleEnum, User

# Roles whose holders skip entitlement checks entirely
BYPASS_ROLES = frozenset({RoleEnum.super_admin})


@dataclass(frozen=True)
class Principal:
    """Identity plus the capabilities the entitlement engine cares about.

    `bypass_entitlements` is a capability flag derived from the role at the
    authentication boundary; the resolver never inspects role names.
    """
    user_id: UUID
    email: str
    workspace_id: Optional[UUID]
    role: str
    bypass_entitlements: bool = False
    feature_overrides: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        role = RoleEnum(user.role)
        return cls(
            user_id=user.id,
            email=user.email,
            workspace_id=user.workspace_id,
            role=role.value,
            bypass_entitlements=role in BYPASS_ROLES,
            feature_overrides=frozenset(user.features or []),
        )
