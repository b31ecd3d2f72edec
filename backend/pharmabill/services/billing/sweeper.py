"""Time-driven lifecycle sweep.

WHAT:
    Persists the transitions that happen purely because time passed:
    - grace_period past grace_period_end -> expired
    - trial past trial_end_date           -> expired
    - paused past pause_until             -> resumed
    - scheduled downgrades that are due   -> applied

WHY:
    The entitlement resolver already blocks expired trials and ended grace
    periods at read time, so the sweep is about keeping stored status (and
    the owner's mirrored pointers) truthful for reporting and notifications,
    not about access control. past_due is never escalated by elapsed time;
    only failed renewals suspend.

REFERENCES:
    - pharmabill/workers/billing_worker.py (hourly cron)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from pharmabill.models import Subscription, SubscriptionStatusEnum
from pharmabill.utils.time import as_utc, utcnow

from .compatibility import CompatibilityShim
from .exceptions import LifecycleError, SubscriptionBusyError
from .lifecycle import SubscriptionAdjustments
from .locks import SubscriptionLockRegistry

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired_grace_periods: List[str] = field(default_factory=list)
    expired_trials: List[str] = field(default_factory=list)
    resumed: List[str] = field(default_factory=list)
    downgraded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.expired_grace_periods) + len(self.expired_trials) + len(self.resumed) + len(self.downgraded)


def _expire_if_due(db: Session, locks: SubscriptionLockRegistry, subscription_id, status: str, deadline_attr: str, now: datetime) -> bool:
    """Move one subscription from `status` to expired if its deadline passed (re-checked under lock)."""
    with locks.hold(subscription_id):
        subscription = db.get(Subscription, subscription_id)
        db.expire(subscription)
        deadline = as_utc(getattr(subscription, deadline_attr))
        if subscription.status != status or deadline is None or deadline > now:
            return False
        subscription.status = SubscriptionStatusEnum.expired.value
        CompatibilityShim(db).sync_pointers(subscription)
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise
    return True


def sweep_lifecycle(db: Session, locks: Optional[SubscriptionLockRegistry] = None, now: Optional[datetime] = None) -> SweepResult:
    now = now or utcnow()
    locks = locks or SubscriptionLockRegistry()
    adjustments = SubscriptionAdjustments(db, locks)
    result = SweepResult()

    grace_ids = [
        row.id for row in db.query(Subscription.id)
        .filter(
            Subscription.status == SubscriptionStatusEnum.grace_period.value,
            Subscription.grace_period_end.isnot(None),
            Subscription.grace_period_end <= now,
        )
    ]
    trial_ids = [
        row.id for row in db.query(Subscription.id)
        .filter(
            Subscription.status == SubscriptionStatusEnum.trial.value,
            Subscription.trial_end_date.isnot(None),
            Subscription.trial_end_date < now,
        )
    ]
    paused_ids = [
        row.id for row in db.query(Subscription.id)
        .filter(
            Subscription.status == SubscriptionStatusEnum.paused.value,
            Subscription.pause_until.isnot(None),
            Subscription.pause_until <= now,
        )
    ]
    downgrade_ids = [
        row.id for row in db.query(Subscription.id)
        .filter(
            Subscription.scheduled_plan_id.isnot(None),
            Subscription.scheduled_change_at <= now,
        )
    ]

    for subscription_id in grace_ids:
        try:
            if _expire_if_due(db, locks, subscription_id, SubscriptionStatusEnum.grace_period.value, "grace_period_end", now):
                result.expired_grace_periods.append(str(subscription_id))
        except SubscriptionBusyError:
            result.skipped.append(str(subscription_id))

    for subscription_id in trial_ids:
        try:
            if _expire_if_due(db, locks, subscription_id, SubscriptionStatusEnum.trial.value, "trial_end_date", now):
                result.expired_trials.append(str(subscription_id))
        except SubscriptionBusyError:
            result.skipped.append(str(subscription_id))

    for subscription_id in paused_ids:
        try:
            adjustments.resume_subscription(subscription_id, reason="Pause period ended", now=now)
            result.resumed.append(str(subscription_id))
        except (LifecycleError, SubscriptionBusyError) as e:
            logger.warning(f"[SWEEPER] Could not resume {subscription_id}: {e}")
            result.skipped.append(str(subscription_id))

    for subscription_id in downgrade_ids:
        try:
            if adjustments.apply_scheduled_downgrade(subscription_id, now=now) is not None:
                result.downgraded.append(str(subscription_id))
        except SubscriptionBusyError:
            result.skipped.append(str(subscription_id))

    logger.info(
        f"[SWEEPER] expired_grace={len(result.expired_grace_periods)} expired_trials={len(result.expired_trials)} "
        f"resumed={len(result.resumed)} downgraded={len(result.downgraded)} skipped={len(result.skipped)}"
    )
    return result
