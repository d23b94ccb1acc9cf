"""Redis-based single-flight locks for comparison, bracket and sync runs."""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from aggregator import metrics
from aggregator.config import settings
from aggregator.errors import ConflictError
from aggregator.logging_config import get_logger

logger = logging.getLogger(__name__)

KEY_PREFIX = "aggregator:run"
COMPARISON_SCOPE = "comparison"

# Atomically delete the lock only if run_id + token match.
# Returns: 0 = not found/already released, 1 = deleted, 2 = mismatch
SAFE_UNLOCK_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end

local cjson = require('cjson')
local success, data = pcall(cjson.decode, lock_value)
if not success then
    return 2
end

if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('DEL', KEYS[1])
    return 1
else
    return 2
end
"""


def lock_key(scope: str) -> str:
    return f"{KEY_PREFIX}:{scope}:lock"


def brackets_scope(currency: str) -> str:
    return f"brackets:{currency.upper()}"


def sync_scope(provider_id: int) -> str:
    return f"sync:{provider_id}"


class RunLockManager:
    """
    Scoped distributed locks using Redis.

    Features:
    - TTL-based expiration so a crashed holder cannot block a scope forever
    - Token-based ownership verification on release
    - Lock info retrieval and admin force-unlock
    """

    def __init__(self, redis_url: Optional[str] = None, redis_client: Optional[redis.Redis] = None):
        """
        Initialize lock manager.

        Args:
            redis_url: Redis connection URL (defaults to settings)
            redis_client: Pre-built client, mainly for tests
        """
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = redis_client

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def acquire(
        self,
        scope: str,
        run_id: str,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[str]:
        """
        Acquire the lock for a scope.

        Args:
            scope: Lock scope, e.g. "comparison" or "brackets:USD"
            run_id: Unique run identifier (UUID hex)
            ttl_seconds: Time-to-live in seconds

        Returns:
            Token string if lock acquired, None if already held
        """
        redis_client = await self._get_redis()
        token = uuid4().hex
        lock_value = json.dumps({
            "run_id": run_id,
            "token": token,
            "scope": scope,
            "started_at": datetime.utcnow().isoformat(),
        })

        acquired = await redis_client.set(
            lock_key(scope),
            lock_value,
            nx=True,
            ex=ttl_seconds or settings.run_lock_ttl_seconds,
        )
        if acquired:
            get_logger(__name__, scope=scope, run_id=run_id).info(f"Acquired {scope} lock")
            return token

        logger.debug(f"{scope} lock already held")
        return None

    async def release(self, scope: str, run_id: str, token: str) -> bool:
        """
        Release a lock only if run_id and token match (atomic).

        Returns:
            True if released or already gone, False if held by another run
        """
        redis_client = await self._get_redis()
        result = await redis_client.eval(SAFE_UNLOCK_SCRIPT, 1, lock_key(scope), run_id, token)

        if result == 0:
            logger.debug(f"{scope} lock already released")
            return True
        if result == 1:
            get_logger(__name__, scope=scope, run_id=run_id).info(f"Released {scope} lock")
            return True
        logger.warning(f"Refused to release {scope} lock held by another run (requested={run_id[:16]})")
        return False

    async def force_unlock(self, scope: str) -> bool:
        """Force unlock without token verification (admin use)."""
        redis_client = await self._get_redis()
        deleted = await redis_client.delete(lock_key(scope))
        logger.warning(f"Force-cleared {scope} lock")
        return bool(deleted)

    async def get_lock_info(self, scope: str) -> Optional[Dict[str, Any]]:
        """
        Get current lock information.

        Returns:
            Dict with run_id, started_at, ttl, or None if no lock
        """
        redis_client = await self._get_redis()
        value = await redis_client.get(lock_key(scope))
        if not value:
            return None
        ttl = await redis_client.ttl(lock_key(scope))

        try:
            data = json.loads(value)
        except json.JSONDecodeError:
            logger.error(f"Invalid lock value for {scope}: {value!r}")
            return {"raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}
        return {
            "run_id": data.get("run_id"),
            "token": data.get("token"),
            "started_at": data.get("started_at"),
            "ttl_seconds": ttl if ttl > 0 else None,
        }

    @asynccontextmanager
    async def single_flight(self, scope: str, ttl_seconds: Optional[int] = None) -> AsyncIterator[str]:
        """
        Hold the scope's lock for the duration of the block.

        Yields:
            The run id of this holder

        Raises:
            ConflictError: If another run holds the lock
        """
        run_id = uuid4().hex
        token = await self.acquire(scope, run_id, ttl_seconds)
        if token is None:
            metrics.record_lock_rejection(scope)
            raise ConflictError(scope)
        try:
            yield run_id
        finally:
            await self.release(scope, run_id, token)


# Global lock manager instance
run_lock_manager = RunLockManager()
