import logging
import threading
import time
import uuid
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger("campaign.lock")

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# One process-local fallback lock per name.
_local_locks: dict[str, threading.Lock] = {}
_local_locks_guard = threading.Lock()


def _local_lock_for(name: str) -> threading.Lock:
    with _local_locks_guard:
        lock = _local_locks.get(name)
        if lock is None:
            lock = threading.Lock()
            _local_locks[name] = lock
        return lock


class DistributedLock:
    """
    Lightweight distributed mutex backed by Redis (NX + EX).
    Falls back to a process-local lock when Redis is unavailable.
    """

    def __init__(
        self,
        name: str,
        *,
        redis_client: Optional[Redis] = None,
        ttl_seconds: int = 20,
        wait_timeout: float = 5,
        retry_interval: float = 0.05,
        log: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.wait_timeout = wait_timeout
        self.retry_interval = retry_interval
        self._owner_token: str | None = None
        self._local_lock = _local_lock_for(name)
        self._logger = log or logger

    def acquire(self) -> bool:
        deadline = time.time() + self.wait_timeout
        token = uuid.uuid4().hex
        self._owner_token = token
        contention_logged = False

        if self.redis_client:
            while True:
                if self.redis_client.set(self.name, token, nx=True, ex=self.ttl_seconds):
                    self._logger.info("lock_acquired", extra={"lock": self.name})
                    return True
                if time.time() >= deadline:
                    break
                if not contention_logged:
                    self._logger.warning("lock_contention", extra={"lock": self.name})
                    contention_logged = True
                time.sleep(self.retry_interval)
            self._logger.warning("lock_acquire_timeout", extra={"lock": self.name})
            self._owner_token = None
            return False

        acquired = self._local_lock.acquire(timeout=self.wait_timeout)
        if acquired:
            self._logger.info("lock_acquired_local", extra={"lock": self.name})
        else:
            self._logger.warning("lock_contention_local", extra={"lock": self.name})
            self._owner_token = None
        return acquired

    def release(self) -> None:
        if self._owner_token is None:
            return
        if self.redis_client:
            try:
                self.redis_client.eval(_RELEASE_SCRIPT, 1, self.name, self._owner_token)
                self._logger.info("lock_released", extra={"lock": self.name})
            except RedisError:
                self._logger.exception("lock_release_failed", extra={"lock": self.name})
        elif self._local_lock.locked():
            self._local_lock.release()
            self._logger.info("lock_released_local", extra={"lock": self.name})
        self._owner_token = None


def make_lock(
    name: str,
    *,
    redis_client: Optional[Redis],
    ttl_seconds: int = 20,
    wait_timeout: float = 5,
    retry_interval: float = 0.05,
    log: logging.Logger | None = None,
) -> DistributedLock:
    return DistributedLock(
        name,
        redis_client=redis_client,
        ttl_seconds=ttl_seconds,
        wait_timeout=wait_timeout,
        retry_interval=retry_interval,
        log=log,
    )
