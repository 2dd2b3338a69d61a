"""
Unit tests for the Redis decision cache.
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from shared.errors import ServiceError
from shared.metrics import MetricsCollector
from service_ledger.app.cache.redis_cache import DecisionCache
from service_ledger.app.domain.models import AccessDecision, AccessReason, SubscriptionStatus
from shared.test_helpers import BASE_TIME


class TestDecisionCache:
    """Test cases for DecisionCache."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("ledger")

    @pytest.fixture
    def cache(self, metrics):
        cache = DecisionCache("redis://localhost:6379/0", default_ttl=300, metrics=metrics)
        cache.redis = AsyncMock()
        return cache

    @pytest.fixture
    def decision(self):
        return AccessDecision(
            has_access=True,
            reason=AccessReason.TRIAL_ACTIVE,
            subscription_status=SubscriptionStatus.TRIAL,
            entitled_apps=["safetunes"],
            user_id="acct-1",
        )

    @pytest.mark.asyncio
    async def test_start_pings_redis(self):
        client = AsyncMock()
        with patch("service_ledger.app.cache.redis_cache.redis.from_url", return_value=client):
            cache = DecisionCache("redis://localhost:6379/0")
            await cache.start()

        client.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_failure_raises(self):
        client = AsyncMock()
        client.ping.side_effect = RedisConnectionError("refused")
        with patch("service_ledger.app.cache.redis_cache.redis.from_url", return_value=client):
            cache = DecisionCache("redis://localhost:6379/0")
            with pytest.raises(ServiceError):
                await cache.start()

    @pytest.mark.asyncio
    async def test_hit_returns_decision(self, cache, decision, metrics):
        cache.redis.get.return_value = decision.model_dump_json()

        cached = await cache.get_decision("parent@example.com", "safetunes")

        assert cached == decision
        assert metrics.registry.get_sample_value("decision_cache_total", {"result": "hit"}) == 1

    @pytest.mark.asyncio
    async def test_miss(self, cache, metrics):
        cache.redis.get.return_value = None

        assert await cache.get_decision("parent@example.com", "safetunes") is None
        assert metrics.registry.get_sample_value("decision_cache_total", {"result": "miss"}) == 1

    @pytest.mark.asyncio
    async def test_errors_degrade_to_miss(self, cache):
        cache.redis.get.side_effect = RedisConnectionError("down")

        assert await cache.get_decision("parent@example.com", "safetunes") is None

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_a_miss(self, cache):
        cache.redis.get.return_value = "{not json"

        assert await cache.get_decision("parent@example.com", "safetunes") is None

    @pytest.mark.asyncio
    async def test_generation_defaults_to_zero(self, cache):
        cache.redis.get.return_value = None
        assert await cache.generation("parent@example.com") == "0"

        cache.redis.get.return_value = "3"
        assert await cache.generation("parent@example.com") == "3"

    @pytest.mark.asyncio
    async def test_generation_unreachable(self, cache):
        cache.redis.get.side_effect = RedisConnectionError("down")

        assert await cache.generation("parent@example.com") is None

    @pytest.mark.asyncio
    async def test_set_uses_default_ttl_without_boundary(self, cache, decision):
        cache.redis.eval.return_value = 1

        assert await cache.set_decision("parent@example.com", "safetunes", decision, "0", BASE_TIME) is True

        _, numkeys, generation_key, key, generation, ttl, payload = cache.redis.eval.call_args.args
        assert numkeys == 2
        assert generation_key == f"decision_gen:{DecisionCache._email_hash('parent@example.com')}"
        assert generation == "0"
        assert ttl == 300
        assert key.endswith(":safetunes")
        assert "parent@example.com" not in key
        assert AccessDecision.model_validate_json(payload) == decision

    @pytest.mark.asyncio
    async def test_set_caps_ttl_at_boundary(self, cache, decision):
        cache.redis.eval.return_value = 1
        boundary = BASE_TIME + timedelta(seconds=42)

        await cache.set_decision("parent@example.com", "safetunes", decision, "0", BASE_TIME, boundary)

        assert cache.redis.eval.call_args.args[5] == 42

    def test_ttl_never_below_one_second(self, cache):
        assert cache.ttl_for(BASE_TIME, BASE_TIME - timedelta(seconds=5)) == 1

    @pytest.mark.asyncio
    async def test_set_skipped_when_generation_moved(self, cache, decision, metrics):
        cache.redis.eval.return_value = 0

        assert await cache.set_decision("parent@example.com", "safetunes", decision, "0", BASE_TIME) is False
        assert metrics.registry.get_sample_value("decision_cache_total", {"result": "stale"}) == 1

    @pytest.mark.asyncio
    async def test_set_skipped_without_generation(self, cache, decision):
        assert await cache.set_decision("parent@example.com", "safetunes", decision, None, BASE_TIME) is False
        cache.redis.eval.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_set_failure_returns_false(self, cache, decision):
        cache.redis.eval.side_effect = RedisConnectionError("down")

        assert await cache.set_decision("parent@example.com", "safetunes", decision, "0", BASE_TIME) is False

    @pytest.mark.asyncio
    async def test_invalidate_email_deletes_all_apps(self, cache):
        cache.redis.keys.return_value = ["decision:abc:safetunes", "decision:abc:safetube"]

        removed = await cache.invalidate_email("parent@example.com")

        assert removed == 2
        generation_key = f"decision_gen:{DecisionCache._email_hash('parent@example.com')}"
        cache.redis.incr.assert_awaited_once_with(generation_key)
        cache.redis.expire.assert_awaited_once_with(generation_key, DecisionCache.GENERATION_TTL)
        cache.redis.delete.assert_awaited_once_with("decision:abc:safetunes", "decision:abc:safetube")
        pattern = cache.redis.keys.call_args.args[0]
        assert pattern == f"decision:{DecisionCache._email_hash('parent@example.com')}:*"

    @pytest.mark.asyncio
    async def test_health_check(self, cache):
        assert await cache.health_check() is True

        cache.redis.ping.side_effect = RedisConnectionError("down")
        assert await cache.health_check() is False
