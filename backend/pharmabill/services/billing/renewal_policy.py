"""Renewal & suspension policy.

WHAT:
    Decides whether a subscription is suspended after a failed renewal, from
    its renewal-attempt history and current status. Pure function of its
    inputs; the transition engine applies the decision.

WHY:
    Historically every failed attempt ever recorded counted towards the
    threshold, so a long-lived subscription with sporadic failures spread over
    years eventually trips it. That behaviour stays the default
    (`FailureCountMode.ALL_TIME`); `SINCE_LAST_SUCCESS` counts only the
    failures after the most recent successful attempt.

REFERENCES:
    - pharmabill/services/billing/transitions.py (payment.failed handler)
"""

import enum
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from pharmabill.models import TERMINAL_STATUSES, SubscriptionStatusEnum

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3


class FailureCountMode(str, enum.Enum):
    ALL_TIME = "all_time"
    SINCE_LAST_SUCCESS = "since_last_success"


@dataclass(frozen=True)
class PolicyDecision:
    suspend: bool
    failed_count: int
    threshold: int
    reason: Optional[str] = None


class RenewalPolicy:
    """Suspend once failed renewal attempts reach `threshold`.

    Args:
        threshold: Number of failed attempts that triggers suspension
        count_mode: Which failures count towards the threshold
    """

    def __init__(self, threshold: int = DEFAULT_FAILURE_THRESHOLD, count_mode: FailureCountMode = FailureCountMode.ALL_TIME):
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.count_mode = FailureCountMode(count_mode)

    def count_failures(self, attempts: Iterable) -> int:
        """Count failed attempts according to the configured mode.

        `attempts` must be in the order they were recorded.
        """
        failed = 0
        for attempt in attempts:
            if attempt.successful:
                if self.count_mode == FailureCountMode.SINCE_LAST_SUCCESS:
                    failed = 0
            else:
                failed += 1
        return failed

    def evaluate(self, attempts: Iterable, current_status: str) -> PolicyDecision:
        failed_count = self.count_failures(attempts)

        if current_status in TERMINAL_STATUSES or current_status == SubscriptionStatusEnum.suspended.value:
            return PolicyDecision(suspend=False, failed_count=failed_count, threshold=self.threshold)

        if failed_count >= self.threshold:
            return PolicyDecision(
                suspend=True,
                failed_count=failed_count,
                threshold=self.threshold,
                reason=f"{failed_count} failed renewal attempts (threshold {self.threshold})",
            )

        return PolicyDecision(suspend=False, failed_count=failed_count, threshold=self.threshold)
