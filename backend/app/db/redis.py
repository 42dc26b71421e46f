"""Redis client for sessions and distributed locks"""
import logging
import secrets
import time
from typing import Optional

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None

# Session TTL (30 days)
SESSION_TTL = 30 * 24 * 60 * 60

# Poll interval while waiting on a held lock
LOCK_POLL_INTERVAL = 0.05


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def set_session(session_id: str, employer_id: int) -> None:
    """Store session in Redis"""
    key = f"session:{session_id}"
    get_redis_client().set(key, employer_id, ex=SESSION_TTL)


def get_session(session_id: str) -> Optional[int]:
    """Get employer_id from session"""
    key = f"session:{session_id}"
    employer_id = get_redis_client().get(key)
    return int(employer_id) if employer_id else None


def acquire_lock(
    lock_key: str,
    timeout: int = 30,
    blocking_timeout: float = 0,
    client=None
) -> Optional[str]:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Args:
        lock_key: The lock key to acquire
        timeout: Lock expiry in seconds (protects against crashed holders)
        blocking_timeout: Seconds to keep retrying while another holder has the lock
        client: Redis client to use (defaults to the shared client)

    Returns:
        Owner token if the lock was acquired, None otherwise
    """
    client = client or get_redis_client()
    token = secrets.token_hex(16)
    deadline = time.monotonic() + blocking_timeout

    while True:
        if client.set(lock_key, token, nx=True, ex=timeout):
            return token
        if time.monotonic() >= deadline:
            return None
        time.sleep(LOCK_POLL_INTERVAL)


def release_lock(lock_key: str, token: str, client=None) -> bool:
    """Release a lock only if it is still held by `token`.

    Uses WATCH/MULTI so an expired lock re-acquired by another caller is never deleted.

    Returns:
        True if the lock was released, False if it had expired or changed owner
    """
    client = client or get_redis_client()
    with client.pipeline() as pipe:
        try:
            pipe.watch(lock_key)
            if pipe.get(lock_key) != token:
                pipe.unwatch()
                logger.warning(f"Lock {lock_key} expired or changed owner before release")
                return False
            pipe.multi()
            pipe.delete(lock_key)
            pipe.execute()
            return True
        except redis.WatchError:
            logger.warning(f"Lock {lock_key} changed while releasing")
            return False
