"""
Redis cache for access decisions.
"""

import hashlib
import json
from datetime import datetime
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import ServiceError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..domain.models import AccessDecision


class DecisionCache:
    """Caches access decisions per (email, app).

    An entry never outlives the next instant its decision could flip on
    its own (trial expiry, end of a canceled period, end of the grace
    window); writes drop the account's entries explicitly.
    """

    DECISION_PREFIX = "decision:"
    GENERATION_PREFIX = "decision_gen:"
    GENERATION_TTL = 86400

    # Write the entry only while the email's generation still matches the
    # one read before the decision was computed.
    SET_IF_GENERATION = """
if (redis.call('GET', KEYS[1]) or '0') == ARGV[1] then
    redis.call('SETEX', KEYS[2], ARGV[2], ARGV[3])
    return 1
end
return 0
"""

    def __init__(self, redis_url: str, default_ttl: int = 300,
                 metrics: Optional[MetricsCollector] = None):
        self.redis_url = redis_url
        self.default_ttl = default_ttl
        self.min_ttl = 1
        self.metrics = metrics
        self.logger = get_logger("ledger.cache.redis")
        self.redis: Optional[redis.Redis] = None

    async def start(self):
        """Start the Redis cache."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
            await self.redis.ping()
            self.logger.info("Redis decision cache started")
        except RedisError as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise ServiceError("Failed to start Redis cache", {"error": str(e)})

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Redis decision cache stopped")

    async def get_decision(self, email: str, app: str) -> Optional[AccessDecision]:
        """Cached decision, or None on a miss or any cache failure."""
        try:
            cached = await self.redis.get(self._key(email, app))
            if not cached:
                self._record("miss")
                return None
            decision = AccessDecision.model_validate(json.loads(cached))
        except (RedisError, ValueError) as e:
            self.logger.error("Error reading cached decision", error=str(e))
            self._record("error")
            return None

        self._record("hit")
        return decision

    async def generation(self, email: str) -> Optional[str]:
        """Current invalidation generation for ``email``; read it before evaluating.

        None means the cache is unreachable and nothing should be written.
        """
        try:
            return await self.redis.get(self._generation_key(email)) or "0"
        except RedisError as e:
            self.logger.error("Error reading cache generation", error=str(e))
            self._record("error")
            return None

    async def set_decision(self, email: str, app: str, decision: AccessDecision,
                           generation: Optional[str], now: datetime,
                           boundary: Optional[datetime] = None) -> bool:
        """Cache ``decision`` until the default TTL or ``boundary``, whichever is sooner.

        Skipped when ``email`` was invalidated after ``generation`` was read,
        since the decision may predate that write.
        """
        if generation is None:
            return False

        ttl = self.ttl_for(now, boundary)
        try:
            written = await self.redis.eval(
                self.SET_IF_GENERATION, 2,
                self._generation_key(email), self._key(email, app),
                generation, ttl, decision.model_dump_json(),
            )
        except RedisError as e:
            self.logger.error("Error caching decision", error=str(e))
            self._record("error")
            return False

        if not written:
            self.logger.debug("Skipped caching stale decision", app=app)
            self._record("stale")
            return False

        self.logger.debug("Cached decision", app=app, ttl=ttl)
        return True

    async def invalidate_email(self, email: str) -> int:
        """Drop every cached decision for ``email`` and bump its generation."""
        try:
            generation_key = self._generation_key(email)
            await self.redis.incr(generation_key)
            await self.redis.expire(generation_key, self.GENERATION_TTL)
            keys = await self.redis.keys(f"{self.DECISION_PREFIX}{self._email_hash(email)}:*")
            if keys:
                await self.redis.delete(*keys)
                self.logger.debug("Invalidated cached decisions", count=len(keys))
            return len(keys)
        except RedisError as e:
            self.logger.error("Error invalidating cached decisions", error=str(e))
            self._record("error")
            return 0

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self.redis.ping()
            return True
        except RedisError:
            return False

    def ttl_for(self, now: datetime, boundary: Optional[datetime]) -> int:
        ttl = self.default_ttl
        if boundary is not None:
            ttl = min(ttl, int((boundary - now).total_seconds()))
        return max(self.min_ttl, ttl)

    def _key(self, email: str, app: str) -> str:
        return f"{self.DECISION_PREFIX}{self._email_hash(email)}:{app}"

    def _generation_key(self, email: str) -> str:
        return f"{self.GENERATION_PREFIX}{self._email_hash(email)}"

    @staticmethod
    def _email_hash(email: str) -> str:
        # Emails may contain glob characters.
        return hashlib.sha256(email.encode()).hexdigest()

    def _record(self, result: str):
        if self.metrics is not None:
            self.metrics.increment_counter("decision_cache_total", result=result)
