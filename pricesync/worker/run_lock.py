"""Redis-based lock ensuring a single reconciliation run at a time."""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from pricesync.config import settings
from pricesync.db.models import utcnow

logger = logging.getLogger(__name__)

LOCK_KEY = "reconcile:lock"
HEARTBEAT_KEY = "reconcile:heartbeat"

# 0 = not found, 1 = deleted, 2 = held by another run
_UNLOCK_SCRIPT = """
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
    redis.call('DEL', KEYS[2])
    return 1
end
return 2
"""

# 0 = not found, 1 = refreshed, 2 = held by another run
_REFRESH_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end

local cjson = require('cjson')
local success, data = pcall(cjson.decode, lock_value)
if not success then
    return 0
end

if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('EXPIRE', KEYS[1], ARGV[3])
    redis.call('SET', KEYS[2], ARGV[4], 'EX', ARGV[3])
    return 1
end
return 2
"""


class RunLockManager:
    """
    Token-owned run lock stored in Redis.

    The lock expires after its TTL unless the owner keeps refreshing it, so
    a crashed run never blocks the scheduler for longer than one TTL.
    """

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None

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

    async def acquire(self, run_id: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """
        Acquire the run lock.

        Args:
            run_id: Unique run identifier
            ttl_seconds: Lock lifetime (defaults to settings.run_lock_ttl_seconds)

        Returns:
            Ownership token if acquired, None if another run holds the lock
        """
        ttl = ttl_seconds or settings.run_lock_ttl_seconds
        redis_client = await self._get_redis()

        token = uuid4().hex
        lock_value = json.dumps({
            "run_id": run_id,
            "token": token,
            "started_at": utcnow().isoformat(),
        })

        acquired = await redis_client.set(LOCK_KEY, lock_value, nx=True, ex=ttl)
        if not acquired:
            logger.debug(f"Run lock already held; run_id {run_id[:16]} not started")
            return None

        await redis_client.set(HEARTBEAT_KEY, str(time.time()), ex=ttl)
        logger.info(f"Acquired run lock for run_id: {run_id[:16]}...")
        return token

    async def release(self, run_id: str, token: str) -> bool:
        """
        Release the lock if this run still owns it.

        Returns:
            True if released (or already gone), False if owned by another run
        """
        redis_client = await self._get_redis()
        result = await redis_client.eval(_UNLOCK_SCRIPT, 2, LOCK_KEY, HEARTBEAT_KEY, run_id, token)

        if result == 2:
            logger.warning(f"Run lock for run_id {run_id[:16]}... is held by another run")
            return False
        if result == 1:
            logger.info(f"Released run lock for run_id: {run_id[:16]}...")
        return True

    async def refresh(self, run_id: str, token: str, ttl_seconds: Optional[int] = None) -> bool:
        """Extend the lock TTL if this run still owns it."""
        ttl = ttl_seconds or settings.run_lock_ttl_seconds
        redis_client = await self._get_redis()
        result = await redis_client.eval(
            _REFRESH_SCRIPT,
            2,
            LOCK_KEY,
            HEARTBEAT_KEY,
            run_id,
            token,
            str(ttl),
            str(time.time()),
        )
        return result == 1

    async def force_unlock(self) -> bool:
        """Clear the lock without ownership checks (admin recovery)."""
        redis_client = await self._get_redis()
        await redis_client.delete(LOCK_KEY, HEARTBEAT_KEY)
        logger.warning("Force-cleared run lock and heartbeat keys")
        return True

    async def get_lock_info(self) -> Optional[Dict[str, Any]]:
        """
        Get current lock information.

        Returns:
            Dict with run_id, started_at, ttl_seconds, heartbeat_age_seconds,
            or None if no run holds the lock
        """
        redis_client = await self._get_redis()
        value = await redis_client.get(LOCK_KEY)
        if not value:
            return None

        ttl = await redis_client.ttl(LOCK_KEY)
        heartbeat = await redis_client.get(HEARTBEAT_KEY)
        heartbeat_age = None
        if heartbeat:
            try:
                heartbeat_age = max(0.0, time.time() - float(heartbeat))
            except ValueError:
                heartbeat_age = None

        try:
            data = json.loads(value)
        except json.JSONDecodeError:
            logger.error(f"Invalid run lock value: {value[:100]}")
            data = {}

        return {
            "run_id": data.get("run_id"),
            "started_at": data.get("started_at"),
            "ttl_seconds": ttl if ttl > 0 else None,
            "heartbeat_age_seconds": heartbeat_age,
        }

    async def heartbeat(self, run_id: str, token: str, interval: Optional[float] = None):
        """
        Refresh the lock periodically until cancelled.

        Stops after three consecutive failed refreshes.
        """
        interval = interval or settings.run_lock_heartbeat_interval_seconds
        failure_count = 0

        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    refreshed = await self.refresh(run_id, token)
                except redis.RedisError as e:
                    logger.warning(f"Heartbeat refresh error: {e}")
                    refreshed = False

                if refreshed:
                    failure_count = 0
                    continue

                failure_count += 1
                logger.warning(
                    f"Heartbeat failed for run_id: {run_id[:16]}... "
                    f"(consecutive failures: {failure_count})"
                )
                if failure_count >= 3:
                    logger.error(f"Heartbeat stopping for run_id: {run_id[:16]}...")
                    break
        except asyncio.CancelledError:
            logger.debug(f"Heartbeat cancelled for run_id: {run_id[:16]}...")
            raise


# Global lock manager instance
run_lock_manager = RunLockManager()
