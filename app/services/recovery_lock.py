"""Per-task mutual exclusion for recovery passes, held in Redis."""
import logging
import time
import uuid

import redis

logger = logging.getLogger(__name__)

LOCK_PREFIX = "lock:recover:"

# Delete the key only while it still holds our token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def recovery_lock_key(task_uuid: str) -> str:
    return f"{LOCK_PREFIX}{task_uuid}"


class RecoveryLock:
    """
    SET NX PX lock with a random owner token.

    Acquisition retries a bounded number of times with exponential backoff and
    gives up (returns False) rather than blocking. Release is a compare-and-delete
    script, so an owner whose lock already expired never removes a newer holder's lock.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        task_uuid: str,
        ttl_seconds: int = 300,
        attempts: int = 3,
        backoff: float = 0.2,
        sleep=time.sleep,
    ):
        self.redis = redis_client
        self.key = recovery_lock_key(task_uuid)
        self.ttl_ms = int(ttl_seconds * 1000)
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self.token = str(uuid.uuid4())
        self.acquired = False
        self._sleep = sleep
        self._release_script = redis_client.register_script(RELEASE_SCRIPT)

    def acquire(self) -> bool:
        for attempt in range(self.attempts):
            try:
                if self.redis.set(self.key, self.token, nx=True, px=self.ttl_ms):
                    self.acquired = True
                    logger.info(f"🔒 Acquired {self.key}")
                    return True
            except redis.RedisError as e:
                logger.error(f"❌ Could not reach Redis while taking {self.key}: {e}")
                return False

            if attempt < self.attempts - 1:
                self._sleep(self.backoff * (2 ** attempt))

        logger.info(f"⏭️ {self.key} is held by another process, skipping")
        return False

    def release(self) -> bool:
        if not self.acquired:
            return False
        try:
            released = bool(self._release_script(keys=[self.key], args=[self.token]))
        except redis.RedisError as e:
            logger.error(f"❌ Failed to release {self.key}: {e}")
            return False
        finally:
            self.acquired = False

        if released:
            logger.info(f"🔓 Released {self.key}")
        else:
            logger.warning(f"⚠️ {self.key} expired before release, left to its new owner")
        return released
