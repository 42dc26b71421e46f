"""Redis-based delayed task queue for background retries

Tasks live in a sorted set per task type, scored by the UNIX time at which
they become due, with metadata kept in a hash per task. Workers claim due
tasks with ZREM so two workers never run the same task.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.db.redis import get_redis_client

logger = logging.getLogger(__name__)

# Redis key prefixes
QUEUE_KEY_PREFIX = "task:delayed:"
META_KEY_PREFIX = "task:meta:"

# Task TTL (7 days for completed/failed tasks metadata)
TASK_META_TTL = 7 * 24 * 60 * 60


def backoff_delay(attempt: int, base: int, maximum: int) -> int:
    """Exponential backoff: base * 2^attempt, capped at maximum"""
    return min(maximum, base * (2 ** max(attempt, 0)))


def enqueue_task(
    task_type: str,
    payload: Dict[str, Any],
    retry_count: int = 0,
    max_retries: int = 3,
    delay_seconds: float = 0,
    last_error: Optional[str] = None,
    now: Optional[datetime] = None,
    client=None
) -> str:
    """Enqueue a task to run after `delay_seconds`

    Args:
        task_type: Type of task (e.g., 'provider_call')
        payload: JSON-serializable task payload
        retry_count: Retries already spent on this payload
        max_retries: Maximum number of retries before the task is dead-lettered
        delay_seconds: Seconds before the task becomes due
        last_error: Error from the previous attempt, if any
        now: Time the delay counts from, on the same clock later passed to claim_due_tasks

    Returns:
        task_id: Unique task identifier
    """
    client = client or get_redis_client()
    task_id = str(uuid.uuid4())
    now = now or datetime.now(timezone.utc)
    due_at = now.timestamp() + delay_seconds

    meta_key = f"{META_KEY_PREFIX}{task_id}"
    client.hset(meta_key, mapping={
        "task_id": task_id,
        "task_type": task_type,
        "payload": json.dumps(payload),
        "retry_count": str(retry_count),
        "max_retries": str(max_retries),
        "created_at": now.isoformat(),
        "due_at": str(due_at),
        "last_error": last_error or "",
        "status": "pending"
    })
    client.expire(meta_key, TASK_META_TTL)

    client.zadd(f"{QUEUE_KEY_PREFIX}{task_type}", {task_id: due_at})

    logger.info(
        f"Enqueued task {task_id} of type {task_type} "
        f"(retry_count={retry_count}, delay={delay_seconds:.0f}s)"
    )
    return task_id


def claim_due_tasks(task_type: str, now: datetime, limit: int = 50, client=None) -> List[Dict[str, Any]]:
    """Claim tasks whose due time has passed

    Args:
        task_type: Type of task to claim
        now: Current time
        limit: Maximum number of tasks to claim

    Returns:
        List of task metadata dicts, already removed from the queue
    """
    client = client or get_redis_client()
    queue_key = f"{QUEUE_KEY_PREFIX}{task_type}"
    task_ids = client.zrangebyscore(queue_key, "-inf", now.timestamp(), start=0, num=limit)

    claimed = []
    for task_id in task_ids:
        # Another worker may have claimed it between the range read and here
        if not client.zrem(queue_key, task_id):
            continue
        task = get_task_status(task_id, client=client)
        if task is None:
            logger.warning(f"Task {task_id} metadata expired before it ran")
            continue
        client.hset(f"{META_KEY_PREFIX}{task_id}", "status", "processing")
        claimed.append(task)
    return claimed


def get_task_status(task_id: str, client=None) -> Optional[Dict[str, Any]]:
    """Get task status and metadata

    Returns:
        Task metadata dict or None if not found
    """
    client = client or get_redis_client()
    meta = client.hgetall(f"{META_KEY_PREFIX}{task_id}")
    if not meta:
        return None

    if "payload" in meta:
        meta["payload"] = json.loads(meta["payload"])
    if "retry_count" in meta:
        meta["retry_count"] = int(meta["retry_count"])
    if "max_retries" in meta:
        meta["max_retries"] = int(meta["max_retries"])
    return meta


def mark_task_completed(task_id: str, status: str = "completed", client=None) -> None:
    """Mark task as finished ('completed', or 'skipped' when it was no longer needed)"""
    client = client or get_redis_client()
    meta_key = f"{META_KEY_PREFIX}{task_id}"
    client.hset(meta_key, mapping={
        "status": status,
        "completed_at": datetime.now(timezone.utc).isoformat()
    })
    logger.info(f"Marked task {task_id} as {status}")


def mark_task_failed(task_id: str, error: str, base_delay: int, max_delay: int, now: Optional[datetime] = None,
                     client=None) -> Optional[str]:
    """Mark task as failed and schedule a retry with exponential backoff

    Returns:
        New task_id if a retry was scheduled, None if retries are exhausted
    """
    client = client or get_redis_client()
    meta = get_task_status(task_id, client=client)
    if meta is None:
        logger.warning(f"Task {task_id} metadata not found")
        return None

    meta_key = f"{META_KEY_PREFIX}{task_id}"
    retry_count = meta["retry_count"]
    max_retries = meta["max_retries"]

    if retry_count < max_retries:
        new_retry_count = retry_count + 1
        delay_seconds = backoff_delay(new_retry_count, base_delay, max_delay)
        client.hset(meta_key, mapping={"status": "retrying", "last_error": error})

        logger.info(
            f"Task {task_id} failed (retry {retry_count}/{max_retries}), "
            f"scheduling retry in {delay_seconds}s: {error}"
        )
        return enqueue_task(
            task_type=meta["task_type"],
            payload=meta["payload"],
            retry_count=new_retry_count,
            max_retries=max_retries,
            delay_seconds=delay_seconds,
            last_error=error,
            now=now,
            client=client
        )

    client.hset(meta_key, mapping={
        "status": "failed",
        "last_error": error,
        "failed_at": datetime.now(timezone.utc).isoformat()
    })
    logger.warning(f"Task {task_id} failed permanently after {retry_count} retries: {error}")
    return None
