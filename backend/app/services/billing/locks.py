"""Per-subscription and per-employer exclusive locks backed by Redis"""
import logging
from contextlib import contextmanager
from typing import Optional

from app.core.config import settings
from app.core.metrics import lock_timeouts_counter
from app.db.redis import acquire_lock, release_lock
from app.services.billing.results import LockTimeoutError

logger = logging.getLogger(__name__)


def subscription_lock_key(subscription_id: int) -> str:
    return f"lock:subscription:{subscription_id}"


def employer_lock_key(employer_id: int) -> str:
    return f"lock:employer:{employer_id}"


class RedisLocker:
    """Blocking keyed mutex with bounded wait and auto-expiry

    Args:
        client: Redis client (defaults to the shared client)
        ttl: Seconds before an abandoned lock expires
        wait: Seconds a caller blocks before giving up
    """

    def __init__(self, client=None, ttl: Optional[int] = None, wait: Optional[float] = None):
        self.client = client
        self.ttl = ttl if ttl is not None else settings.SUBSCRIPTION_LOCK_TTL
        self.wait = wait if wait is not None else settings.SUBSCRIPTION_LOCK_WAIT

    @contextmanager
    def hold(self, key: str):
        """Hold `key` for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not acquired within `wait` seconds
        """
        token = acquire_lock(key, timeout=self.ttl, blocking_timeout=self.wait, client=self.client)
        if token is None:
            lock_timeouts_counter.inc()
            logger.warning(f"Timed out after {self.wait}s waiting for {key}")
            raise LockTimeoutError(f"Timed out waiting for {key}")
        try:
            yield
        finally:
            release_lock(key, token, client=self.client)
