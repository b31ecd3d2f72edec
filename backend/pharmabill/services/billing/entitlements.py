"""Entitlement resolver.

WHAT:
    Answers, for an authenticated principal, "may this request proceed, and
    is feature X available?" using the subscription resolved by the
    compatibility shim. Read-only: it takes no locks and never mutates.

WHY:
    Two failure modes are deliberately distinct:
    - block_access=True: a definitive billing decision (expired trial,
      suspended, cancelled...). Callers answer 402.
    - valid=False, block_access=False: the engine could not establish a
      subscription context at all (user still onboarding, unknown status
      value). The request continues, marked degraded, so a billing data
      problem never locks everyone out.

DECISION ORDER:
    1. Bypass capability (top administrative role) -> allowed
    2. No subscription context -> soft fail
    3. Trial temporally expired and status not active -> blocked
    4. Status switch (see _apply_status)
    5. Requested feature -> has_feature_access

REFERENCES:
    - pharmabill/deps.py (require_entitlement dependency)
    - pharmabill/services/billing/compatibility.py
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Optional, Tuple

from sqlalchemy.orm import Session

from pharmabill.models import SubscriptionStatusEnum
from pharmabill.utils.time import as_utc, utcnow

from .compatibility import CompatibilityShim, CurrentOwner, ResolvedSubscription
from .principal import Principal

logger = logging.getLogger(__name__)


LIMIT_KEYS = ("patients", "users", "locations", "storage", "api_calls")

# Limits applied when neither subscription nor plan defines one
DEFAULT_LIMITS = {
    "patients": None,
    "users": None,
    "locations": 1,
    "storage": None,
    "api_calls": None,
}

BLOCKED_STATUS_MESSAGES = {
    SubscriptionStatusEnum.expired.value: "Your subscription has expired. Please renew to continue.",
    SubscriptionStatusEnum.cancelled.value: "Your subscription has been cancelled.",
    SubscriptionStatusEnum.suspended.value: "Your subscription is suspended after repeated payment failures.",
    SubscriptionStatusEnum.paused.value: "Your subscription is paused.",
}


@dataclass(frozen=True)
class EntitlementDecision:
    """Outcome of an entitlement check.

    `source` names where the requested feature was granted from
    (admin, subscription, custom, user, plan); `generation` names which
    ownership model answered (workspace, legacy).
    """
    allowed: bool
    block_access: bool
    valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    warning: Optional[str] = None
    feature_set: FrozenSet[str] = field(default_factory=frozenset)
    source: Optional[str] = None
    generation: Optional[str] = None
    status: Optional[str] = None
    subscription_id: Optional[str] = None
    upgrade_required: bool = False
    requires_action: bool = False

    @property
    def degraded(self) -> bool:
        return not self.valid and not self.block_access


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    limit: Optional[int]
    current: int
    limit_key: str


class EntitlementResolver:
    """Resolves entitlement decisions for principals.

    Args:
        db: Session used for read-only lookups
        now: Optional clock override (tests, sweeps)
    """

    def __init__(self, db: Session, now: Optional[datetime] = None):
        self.db = db
        self.shim = CompatibilityShim(db)
        self._now = now

    @property
    def now(self) -> datetime:
        return self._now or utcnow()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(
        self,
        principal: Principal,
        requested_feature: Optional[str] = None,
        resolved: Optional[ResolvedSubscription] = None,
    ) -> EntitlementDecision:
        if resolved is None:
            resolved = self.shim.resolve(principal)

        if principal.bypass_entitlements:
            features = self.feature_set(resolved, principal) if resolved else frozenset(principal.feature_overrides)
            return EntitlementDecision(
                allowed=True,
                block_access=False,
                valid=True,
                feature_set=features,
                source="admin" if requested_feature else None,
                generation=resolved.generation if resolved else None,
                status=resolved.subscription.status if resolved else None,
                subscription_id=str(resolved.subscription.id) if resolved else None,
            )

        if resolved is None:
            reason = "no_subscription" if principal.workspace_id else "no_workspace"
            logger.info(f"[ENTITLEMENT] No subscription context for principal {principal.user_id} ({reason})")
            if requested_feature:
                granted, source = self._check_sources(requested_feature, None, principal)
                return EntitlementDecision(
                    allowed=granted,
                    block_access=False,
                    valid=False,
                    reason=None if granted else "feature_not_available",
                    message=None if granted else "An active subscription is required for this feature.",
                    warning=reason,
                    feature_set=frozenset(principal.feature_overrides),
                    source=source,
                    upgrade_required=not granted,
                )
            return EntitlementDecision(
                allowed=True,
                block_access=False,
                valid=False,
                reason=reason,
                warning=reason,
                feature_set=frozenset(principal.feature_overrides),
            )

        subscription = resolved.subscription
        features = self.feature_set(resolved, principal)
        base = dict(
            feature_set=features,
            generation=resolved.generation,
            status=subscription.status,
            subscription_id=str(subscription.id),
        )

        if self._trial_expired(resolved):
            return EntitlementDecision(
                allowed=False,
                block_access=True,
                valid=True,
                reason="trial_expired",
                message="Your free trial has ended. Choose a plan to continue.",
                upgrade_required=True,
                requires_action=True,
                **base,
            )

        decision = self._apply_status(subscription, base)
        if decision.block_access or not requested_feature:
            return decision

        granted, source = self._check_sources(requested_feature, resolved, principal)
        if not granted:
            return EntitlementDecision(
                allowed=False,
                block_access=False,
                valid=decision.valid,
                reason="feature_not_available",
                message=f"Your current plan does not include '{requested_feature}'.",
                warning=decision.warning,
                upgrade_required=True,
                **base,
            )
        return EntitlementDecision(
            allowed=True,
            block_access=False,
            valid=decision.valid,
            reason=decision.reason,
            message=decision.message,
            warning=decision.warning,
            source=source,
            **base,
        )

    def has_feature_access(self, principal: Principal, feature_key: str, resolved: Optional[ResolvedSubscription] = None) -> bool:
        if resolved is None:
            resolved = self.shim.resolve(principal)
        granted, _ = self._check_sources(feature_key, resolved, principal)
        return granted or principal.bypass_entitlements

    def feature_set(self, resolved: ResolvedSubscription, principal: Principal) -> FrozenSet[str]:
        subscription = resolved.subscription
        features = set(subscription.features or [])
        features.update(subscription.custom_features or [])
        features.update(principal.feature_overrides)
        if resolved.plan is not None:
            features.update(resolved.plan.features or [])
        return frozenset(features)

    def check_limit(
        self,
        principal: Principal,
        limit_key: str,
        current_usage: int,
        resolved: Optional[ResolvedSubscription] = None,
    ) -> LimitCheck:
        """Compare `current_usage` with the plan limit for `limit_key`.

        The check passes while usage is strictly below the limit, so it answers
        "may one more be created". A None limit means unlimited.
        """
        if limit_key not in LIMIT_KEYS:
            raise ValueError(f"Unknown limit key: {limit_key}")
        if principal.bypass_entitlements:
            return LimitCheck(allowed=True, limit=None, current=current_usage, limit_key=limit_key)

        if resolved is None:
            resolved = self.shim.resolve(principal)

        limit = self._effective_limit(resolved, limit_key)
        allowed = limit is None or current_usage < limit
        if not allowed:
            logger.info(f"[ENTITLEMENT] Limit {limit_key} reached for principal {principal.user_id}: {current_usage}/{limit}")
        return LimitCheck(allowed=allowed, limit=limit, current=current_usage, limit_key=limit_key)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_sources(
        self,
        feature_key: str,
        resolved: Optional[ResolvedSubscription],
        principal: Principal,
    ) -> Tuple[bool, Optional[str]]:
        """Walk feature sources in precedence order, returning the first grant."""
        if resolved is not None:
            subscription = resolved.subscription
            if feature_key in (subscription.features or []):
                return True, "subscription"
            if feature_key in (subscription.custom_features or []):
                return True, "custom"
        if feature_key in principal.feature_overrides:
            return True, "user"
        if resolved is not None and resolved.plan is not None and feature_key in (resolved.plan.features or []):
            return True, "plan"
        return False, None

    def _trial_expired(self, resolved: ResolvedSubscription) -> bool:
        subscription = resolved.subscription
        if subscription.status == SubscriptionStatusEnum.active.value:
            return False
        trial_end = as_utc(subscription.trial_end_date)
        if trial_end is None and isinstance(resolved.owner, CurrentOwner) and resolved.workspace is not None:
            trial_end = as_utc(resolved.workspace.trial_end_date)
        return trial_end is not None and trial_end < self.now

    def _apply_status(self, subscription, base: dict) -> EntitlementDecision:
        status = subscription.status

        if status in (SubscriptionStatusEnum.trial.value, SubscriptionStatusEnum.active.value):
            return EntitlementDecision(allowed=True, block_access=False, valid=True, **base)

        if status == SubscriptionStatusEnum.past_due.value:
            return EntitlementDecision(
                allowed=True,
                block_access=False,
                valid=True,
                warning="payment_past_due",
                message="Your last payment failed. Please update your payment method.",
                requires_action=True,
                **base,
            )

        if status == SubscriptionStatusEnum.grace_period.value:
            grace_end = as_utc(subscription.grace_period_end)
            if grace_end is not None and grace_end <= self.now:
                return EntitlementDecision(
                    allowed=False,
                    block_access=True,
                    valid=True,
                    reason="grace_period_ended",
                    message="Your grace period has ended. Please renew to continue.",
                    requires_action=True,
                    **base,
                )
            return EntitlementDecision(
                allowed=True,
                block_access=False,
                valid=True,
                warning="grace_period",
                message="Your subscription was cancelled and access ends soon.",
                **base,
            )

        if status in BLOCKED_STATUS_MESSAGES:
            return EntitlementDecision(
                allowed=False,
                block_access=True,
                valid=True,
                reason=f"subscription_{status}",
                message=BLOCKED_STATUS_MESSAGES[status],
                requires_action=status != SubscriptionStatusEnum.paused.value,
                **base,
            )

        logger.warning(f"[ENTITLEMENT] Unknown subscription status {status!r} on {subscription.id}; failing open")
        return EntitlementDecision(
            allowed=True,
            block_access=False,
            valid=False,
            warning="unknown_subscription_status",
            **base,
        )

    def _effective_limit(self, resolved: Optional[ResolvedSubscription], limit_key: str) -> Optional[int]:
        if resolved is not None:
            subscription_limits = resolved.subscription.limits or {}
            if limit_key in subscription_limits:
                return subscription_limits[limit_key]
            if resolved.plan is not None and limit_key in (resolved.plan.limits or {}):
                return resolved.plan.limits[limit_key]
        return DEFAULT_LIMITS[limit_key]
