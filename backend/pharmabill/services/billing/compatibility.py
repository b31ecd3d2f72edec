"""Compatibility shim between the two subscription generations.

WHAT:
    Subscriptions were originally owned by individual users (legacy
    generation: `User.current_subscription_id`, `User.subscription_tier`).
    They are now owned by workspaces (current generation:
    `Workspace.current_subscription_id`). Both coexist until every account is
    migrated. This module is the only place that knows about both; every
    other component receives a `ResolvedSubscription` and does not care which
    generation produced it.

WHY:
    - Owner is a tagged union (CurrentOwner | LegacyOwner), not two nullable
      foreign keys checked ad hoc across the codebase
    - Legacy response field names are injected by one pure function applied at
      the response boundary, instead of duplicated fields written everywhere

REFERENCES:
    - pharmabill/services/billing/entitlements.py (consumer)
    - pharmabill/middleware.py (LegacyAliasMiddleware)
"""

import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from pharmabill.models import TERMINAL_STATUSES, Plan, Subscription, SubscriptionStatusEnum, User, Workspace

from .principal import Principal

logger = logging.getLogger(__name__)


# =============================================================================
# OWNER TYPES
# =============================================================================

@dataclass(frozen=True)
class CurrentOwner:
    workspace_id: UUID
    kind: ClassVar[str] = "workspace"


@dataclass(frozen=True)
class LegacyOwner:
    user_id: UUID
    kind: ClassVar[str] = "legacy"


SubscriptionOwner = Union[CurrentOwner, LegacyOwner]


@dataclass
class ResolvedSubscription:
    """A subscription plus everything resolved alongside it for one request."""
    owner: SubscriptionOwner
    subscription: Subscription
    plan: Optional[Plan] = None
    workspace: Optional[Workspace] = None
    user: Optional[User] = None

    @property
    def generation(self) -> str:
        return self.owner.kind


# =============================================================================
# SHIM
# =============================================================================

class CompatibilityShim:
    """Resolves subscriptions across both ownership generations."""

    def __init__(self, db: Session):
        self.db = db

    def owners_for(self, principal: Principal) -> List[SubscriptionOwner]:
        """Candidate owners in resolution order: workspace first, then legacy."""
        owners: List[SubscriptionOwner] = []
        if principal.workspace_id:
            owners.append(CurrentOwner(workspace_id=principal.workspace_id))
        owners.append(LegacyOwner(user_id=principal.user_id))
        return owners

    def owner_of(self, subscription: Subscription) -> Optional[SubscriptionOwner]:
        if subscription.workspace_id:
            return CurrentOwner(workspace_id=subscription.workspace_id)
        if subscription.user_id:
            return LegacyOwner(user_id=subscription.user_id)
        return None

    def find_subscription(self, owner: SubscriptionOwner) -> Optional[Subscription]:
        """Return the owner's current subscription (pointer first, newest otherwise)."""
        if isinstance(owner, CurrentOwner):
            workspace = self.db.get(Workspace, owner.workspace_id)
            if workspace is None:
                return None
            if workspace.current_subscription_id:
                subscription = self.db.get(Subscription, workspace.current_subscription_id)
                if subscription is not None and subscription.workspace_id == workspace.id:
                    return subscription
            return (
                self.db.query(Subscription)
                .filter(Subscription.workspace_id == workspace.id)
                .order_by(Subscription.created_at.desc())
                .first()
            )

        user = self.db.get(User, owner.user_id)
        if user is None:
            return None
        if user.current_subscription_id:
            subscription = self.db.get(Subscription, user.current_subscription_id)
            if subscription is not None and subscription.user_id == user.id:
                return subscription
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user.id, Subscription.workspace_id.is_(None))
            .order_by(Subscription.created_at.desc())
            .first()
        )

    def resolve(self, principal: Principal) -> Optional[ResolvedSubscription]:
        """Resolve the principal's effective subscription, whichever generation holds it."""
        for owner in self.owners_for(principal):
            subscription = self.find_subscription(owner)
            if subscription is None:
                continue
            if isinstance(owner, LegacyOwner):
                logger.debug(f"[COMPAT] Principal {principal.user_id} resolved through legacy subscription {subscription.id}")
            return self._build(owner, subscription)
        return None

    def resolve_owner(self, owner: SubscriptionOwner) -> Optional[ResolvedSubscription]:
        subscription = self.find_subscription(owner)
        if subscription is None:
            return None
        return self._build(owner, subscription)

    def subscription_for_metadata(
        self,
        workspace_id: Optional[UUID] = None,
        user_id: Optional[UUID] = None,
    ) -> Optional[Subscription]:
        """Find the subscription an inbound event refers to by owner ids."""
        if workspace_id:
            subscription = self.find_subscription(CurrentOwner(workspace_id=workspace_id))
            if subscription is not None:
                return subscription
        if user_id:
            return self.find_subscription(LegacyOwner(user_id=user_id))
        return None

    def sync_pointers(self, subscription: Subscription, make_current: bool = False) -> None:
        """Refresh the owner's entitlement pointers from `subscription`.

        Unless `make_current` is set (new or explicitly activated
        subscriptions), the pointer only moves to `subscription` when it is
        empty, already points at it, or points at a subscription in a
        terminal status. An event for an old subscription never hijacks a
        newer one.
        """
        owner = self.owner_of(subscription)
        if owner is None:
            logger.warning(f"[COMPAT] Subscription {subscription.id} has no owner; pointers not updated")
            return

        if isinstance(owner, CurrentOwner):
            workspace = self.db.get(Workspace, owner.workspace_id)
            if workspace is None or not (make_current or self._may_point(workspace.current_subscription_id, subscription)):
                return
            workspace.current_subscription_id = subscription.id
            workspace.current_plan_id = subscription.plan_id
            workspace.subscription_status = subscription.status
            if subscription.status == SubscriptionStatusEnum.trial.value and subscription.trial_end_date:
                workspace.trial_end_date = subscription.trial_end_date
            return

        user = self.db.get(User, owner.user_id)
        if user is None or not (make_current or self._may_point(user.current_subscription_id, subscription)):
            return
        user.current_subscription_id = subscription.id
        user.current_plan_id = subscription.plan_id
        user.subscription_tier = subscription.tier

    def _may_point(self, current_id: Optional[UUID], subscription: Subscription) -> bool:
        if current_id is None or current_id == subscription.id:
            return True
        current = self.db.get(Subscription, current_id)
        return current is None or current.status in TERMINAL_STATUSES

    def _build(self, owner: SubscriptionOwner, subscription: Subscription) -> ResolvedSubscription:
        plan = subscription.plan
        workspace = None
        user = None
        if isinstance(owner, CurrentOwner):
            workspace = self.db.get(Workspace, owner.workspace_id)
            if plan is None and workspace is not None and workspace.current_plan_id:
                plan = self.db.get(Plan, workspace.current_plan_id)
        else:
            user = self.db.get(User, owner.user_id)
            if plan is None and user is not None and user.current_plan_id:
                plan = self.db.get(Plan, user.current_plan_id)
        return ResolvedSubscription(owner=owner, subscription=subscription, plan=plan, workspace=workspace, user=user)


# =============================================================================
# RESPONSE SHAPING
# =============================================================================

# modern field -> legacy alias read by older clients
LEGACY_FIELD_ALIASES: Dict[str, str] = {
    "workspace_id": "workplace_id",
    "plan_id": "current_plan_id",
    "tier": "subscription_tier",
    "subscription_id": "current_subscription_id",
}


def inject_legacy_aliases(payload: Any) -> Any:
    """Return a copy of `payload` with legacy alias keys added.

    Applied recursively to dicts and lists. An alias is added only when the
    modern key is present and the alias is not; existing values are never
    overwritten.
    """
    if isinstance(payload, list):
        return [inject_legacy_aliases(item) for item in payload]
    if not isinstance(payload, dict):
        return payload

    shaped = {key: inject_legacy_aliases(value) for key, value in payload.items()}
    for modern, legacy in LEGACY_FIELD_ALIASES.items():
        if modern in shaped and legacy not in shaped:
            shaped[legacy] = shaped[modern]
    return shaped
