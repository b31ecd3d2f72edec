"""Per-subscription mutual exclusion.

WHAT:
    `SubscriptionLockRegistry.hold(subscription_id)` is a context manager that
    serializes every mutation of one subscription (webhook handlers,
    user-initiated cancellation, administrative operations, the sweeper).
    Different subscriptions never contend.

WHY:
    The gateway may deliver the same event twice concurrently, or deliver
    `payment.failed` and `payment.successful` for the same subscription at the
    same moment. Without serialization both handlers could pass the dedup
    check, or the failure counter could be evaluated against a stale read.

    Two backends:
    - Redis (`redis-py` Lock) when REDIS_URL is configured, for multi-replica deployments
    - In-process `threading.Lock` per key otherwise (single replica, tests)

    Lock acquisition is bounded; a timeout raises SubscriptionBusyError so the
    webhook returns 500 and the gateway retries later.

REFERENCES:
    - pharmabill/services/billing/transitions.py
    - redis-py Lock: https://redis-py.readthedocs.io/en/stable/lock.html
"""

import logging
import threading
from contextlib import contextmanager
from functools import lru_cache
from typing import Dict, Iterator, Optional

import redis

from .exceptions import SubscriptionBusyError

logger = logging.getLogger(__name__)

LOCK_PREFIX = "pharmabill:subscription-lock:"


class SubscriptionLockRegistry:
    """Registry of per-subscription locks.

    Args:
        redis_client: Optional redis client; when None, in-process locks are used
        timeout_seconds: Max time to wait for a lock
        lease_seconds: Redis lock auto-expiry, so a crashed holder cannot wedge a subscription
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        timeout_seconds: float = 10.0,
        lease_seconds: float = 60.0,
    ):
        self._redis = redis_client
        self.timeout_seconds = timeout_seconds
        self.lease_seconds = lease_seconds
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @property
    def distributed(self) -> bool:
        return self._redis is not None

    def health_check(self) -> bool:
        if self._redis is None:
            return True
        try:
            return bool(self._redis.ping())
        except redis.exceptions.RedisError as e:
            logger.error(f"[LOCK] Redis health check failed: {e}")
            return False

    @contextmanager
    def hold(self, subscription_id) -> Iterator[None]:
        key = str(subscription_id)
        if self._redis is not None:
            with self._hold_redis(key):
                yield
        else:
            with self._hold_local(key):
                yield

    @contextmanager
    def _hold_local(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1

        acquired = lock.acquire(timeout=self.timeout_seconds)
        try:
            if not acquired:
                logger.warning(f"[LOCK] Timed out waiting for subscription {key}")
                raise SubscriptionBusyError(f"Subscription {key} is busy")
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    @contextmanager
    def _hold_redis(self, key: str) -> Iterator[None]:
        lock = self._redis.lock(
            LOCK_PREFIX + key,
            timeout=self.lease_seconds,
            blocking_timeout=self.timeout_seconds,
        )
        if not lock.acquire():
            logger.warning(f"[LOCK] Timed out waiting for distributed lock on subscription {key}")
            raise SubscriptionBusyError(f"Subscription {key} is busy")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError as e:
                # Lease expired while held; the optimistic version check catches any overlap
                logger.warning(f"[LOCK] Lost distributed lock on subscription {key}: {e}")


@lru_cache()
def get_lock_registry() -> SubscriptionLockRegistry:
    """Process-wide lock registry built from settings."""
    from pharmabill.deps import get_settings

    settings = get_settings()
    client = None
    if settings.REDIS_URL:
        client = redis.Redis.from_url(settings.REDIS_URL)
        logger.info("[LOCK] Using Redis-backed subscription locks")
    else:
        logger.info("[LOCK] REDIS_URL not set - using in-process subscription locks")
    return SubscriptionLockRegistry(client, timeout_seconds=settings.LOCK_TIMEOUT_SECONDS)
