import logging
import threading
import time

import redis
from redis.exceptions import RedisError

from storefront.core.config import settings

logger = logging.getLogger(__name__)


class OverrideGuard:
    """
    Fixed-window counter capping how many forced overrides may run.

    The count lives in Redis so every worker shares the same budget.
    When Redis is unreachable the guard keeps a per-process count in RAM.
    """

    def __init__(self, redis_url: str | None = None, limit: int | None = None,
                 window_seconds: int | None = None, clock=time.time):
        self.limit = limit if limit is not None else settings.FORCED_OVERRIDE_LIMIT
        self.window_seconds = window_seconds or settings.FORCED_OVERRIDE_WINDOW_SECONDS
        self.clock = clock
        self.redis = None
        self.redis_available = False

        # 1. Primary counter (Redis)
        redis_url = redis_url or settings.REDIS_URL
        if redis_url:
            try:
                self.redis = redis.from_url(
                    redis_url,
                    decode_responses=True,
                    socket_connect_timeout=1  # Fail fast if Redis is down
                )
                self.redis.ping()
                self.redis_available = True
                logger.info("✅ OverrideGuard: Connected to Redis.")
            except (RedisError, ValueError) as e:
                logger.warning(f"⚠️ OverrideGuard: Redis unreachable ({e}). Using RAM fallback.")
        else:
            logger.info("OverrideGuard: no REDIS_URL, counting in RAM.")

        # 2. Fallback counter (RAM), shared by every thread of the process
        self._memory_store = {}
        self._lock = threading.Lock()

    def _key(self, scope: str) -> str:
        window = int(self.clock() // self.window_seconds)
        return f"override:{scope}:{window}"

    def try_acquire(self, scope: str = "global") -> bool:
        """Consumes one slot of the current window. False when the budget is spent."""
        key = self._key(scope)

        if self.redis_available:
            try:
                count = self.redis.incr(key)
                if count == 1:
                    self.redis.expire(key, self.window_seconds)
                return count <= self.limit
            except RedisError as e:
                self._handle_redis_error(e)

        with self._lock:
            # Old windows are dropped as new ones open
            for stale in [k for k in self._memory_store if k.startswith(f"override:{scope}:") and k != key]:
                self._memory_store.pop(stale, None)
            count = self._memory_store.get(key, 0) + 1
            self._memory_store[key] = count
        return count <= self.limit

    def remaining(self, scope: str = "global") -> int:
        key = self._key(scope)
        used = 0
        if self.redis_available:
            try:
                used = int(self.redis.get(key) or 0)
                return max(self.limit - used, 0)
            except RedisError as e:
                self._handle_redis_error(e)
        with self._lock:
            used = self._memory_store.get(key, 0)
        return max(self.limit - used, 0)

    def _handle_redis_error(self, e):
        """Log error and switch flag to False to stop trying Redis for a while."""
        logger.error(f"❌ Redis Error: {e}. Switching to RAM mode.")
        self.redis_available = False
