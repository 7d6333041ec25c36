from redis import Redis
from typing import Optional
from redis.lock import Lock

from routehub.src import exceptions
from routehub.src.constants import (
    REDIS_HOST,
    REDIS_PORT,
    REDIS_PASSWORD,
    MUTEX_LOCK_TIMEOUT,
    MUTEX_LOCK_MAX_WAIT_TIME,
)

# Redis client (lazy connection, shared by every worker thread)
redisClient = Redis(
    host=REDIS_HOST,
    port=REDIS_PORT,
    password=REDIS_PASSWORD,
    decode_responses=True,
)


def acquireLock(
    resource: str,
    key: Optional[str] = None,
    timeOut: int = MUTEX_LOCK_TIMEOUT,
    blockingTimeOut: int = MUTEX_LOCK_MAX_WAIT_TIME,
) -> Lock:
    """
    Acquire a Redis-based mutex lock for a resource or one key of it.

    Locks are shared across every process serving the API, so they are
    used to serialize work that must not interleave cluster wide, such
    as provisioning a tenant database or starting a trip for a bus.

    Args:
        resource (str): Name of the resource to lock (e.g. `provision`, `trips`).
        key (Optional[str]): Optional key for per-item locking (e.g. a database name).
        timeOut (int): Lock expiration in seconds (auto-released after this).
        blockingTimeOut (int): Maximum time (in seconds) to wait for lock acquisition.

    Returns:
        Lock: A Redis lock object if successfully acquired.

    Raises:
        exceptions.LockAcquireTimeout: If the lock could not be acquired within blockingTimeOut.
        exceptions.RedisDBError: If Redis cannot be reached.
    """
    try:
        lockName = f"lock:{resource}" if key is None else f"lock:{resource}:{key}"
        lock = redisClient.lock(lockName, timeout=timeOut)
        if lock.acquire(blocking=True, blocking_timeout=blockingTimeOut):
            return lock
        raise exceptions.LockAcquireTimeout()
    except Exception as e:
        exceptions.handle(e)


def releaseLock(lock: Optional[Lock]) -> None:
    """
    Release a previously acquired Redis lock.

    Does nothing if the lock is None, already expired, or owned by another client.
    """
    if lock and lock.locked() and lock.owned():
        lock.release()
