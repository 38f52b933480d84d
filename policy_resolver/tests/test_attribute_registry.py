"""
Unit tests for the attribute resolver registry.
"""

import asyncio
import time
import pytest
from unittest.mock import MagicMock

from shared.errors import (
    AttributeNotFoundError, AttributeResolutionFailure, ConfigurationError,
    CyclicDependencyError, EvaluationTimeout
)
from policy_resolver.attributes.cache import InMemoryAttributeCache
from policy_resolver.attributes.registry import AttributeResolver, AttributeResolverRegistry
from policy_resolver.test_helpers import CountingCompute, FakeClock, make_attribute_context


class TestAttributeResolverRegistry:
    """Test cases for AttributeResolverRegistry."""

    @pytest.fixture
    def clock(self):
        """Create a settable clock."""
        return FakeClock()

    @pytest.fixture
    def metrics(self):
        """Create mock metrics collector."""
        return MagicMock()

    @pytest.fixture
    def registry(self, clock, metrics):
        """Create registry backed by an in-memory cache."""
        return AttributeResolverRegistry(cache=InMemoryAttributeCache(clock=clock), metrics=metrics)

    @pytest.fixture
    def context(self):
        """Create attribute resolution context."""
        return make_attribute_context()

    def test_register_and_lookup(self, registry):
        """Test register, get, names and unregister."""
        resolver = AttributeResolver(name="user.region", compute=lambda ctx: "EU")
        registry.register(resolver)

        assert "user.region" in registry
        assert registry.get("user.region") is resolver
        assert registry.names() == ["user.region"]
        assert registry.unregister("user.region") is True
        assert registry.unregister("user.region") is False

    def test_injected_empty_cache_is_kept(self, clock):
        """Test an empty injected cache is used rather than replaced."""
        cache = InMemoryAttributeCache(clock=clock)

        assert AttributeResolverRegistry(cache=cache).cache is cache

    @pytest.mark.asyncio
    async def test_registries_share_cache(self, clock, context):
        """Test two registries on one cache compute a key once."""
        cache = InMemoryAttributeCache(clock=clock)
        compute = CountingCompute()
        first = AttributeResolverRegistry(cache=cache)
        second = AttributeResolverRegistry(cache=cache)
        for registry in (first, second):
            registry.register(AttributeResolver(name="shared.attr", compute=compute, cache_timeout=1000))

        await first.resolve("shared.attr", context)
        await second.resolve("shared.attr", context)

        assert compute.calls == 1

    def test_register_invalid_cache_timeout(self, registry):
        """Test non-positive cache timeouts are rejected."""
        with pytest.raises(ConfigurationError):
            registry.register(AttributeResolver(name="bad", compute=lambda ctx: 1, cache_timeout=0))

    def test_register_without_name(self, registry):
        """Test nameless resolvers are rejected."""
        with pytest.raises(ConfigurationError):
            registry.register(AttributeResolver(name="", compute=lambda ctx: 1))

    @pytest.mark.asyncio
    async def test_resolve_unknown(self, registry, context):
        """Test unknown attribute raises AttributeNotFoundError."""
        with pytest.raises(AttributeNotFoundError) as exc_info:
            await registry.resolve("missing.attr", context)

        assert exc_info.value.attribute == "missing.attr"
        assert exc_info.value.code == "ATTRIBUTE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_resolve_sync_and_async_compute(self, registry, context):
        """Test plain and coroutine computes both resolve."""
        async def fetch_region(ctx):
            return "EU"

        registry.register(AttributeResolver(name="user.id", compute=lambda ctx: ctx.user_id))
        registry.register(AttributeResolver(name="user.region", compute=fetch_region))

        assert await registry.resolve("user.id", context) == "user-1"
        assert await registry.resolve("user.region", context) == "EU"

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, registry, context, clock, metrics):
        """Test compute runs once while the cache entry is live."""
        compute = CountingCompute("value")
        registry.register(AttributeResolver(name="cached.attr", compute=compute, cache_timeout=1000))

        assert await registry.resolve("cached.attr", context) == "value"
        clock.advance(0.5)
        assert await registry.resolve("cached.attr", context) == "value"

        assert compute.calls == 1
        metrics.increment_counter.assert_any_call("attribute_cache_hits_total")
        metrics.increment_counter.assert_any_call("attribute_cache_misses_total")

    @pytest.mark.asyncio
    async def test_recomputed_after_ttl(self, registry, context, clock):
        """Test compute runs again once the entry expires."""
        compute = CountingCompute()
        registry.register(AttributeResolver(name="cached.attr", compute=compute, cache_timeout=1000))

        await registry.resolve("cached.attr", context)
        clock.advance(2)
        await registry.resolve("cached.attr", context)

        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_uncached_resolver(self, registry, context):
        """Test resolvers without a cache timeout always compute."""
        compute = CountingCompute()
        registry.register(AttributeResolver(name="live.attr", compute=compute))

        await registry.resolve("live.attr", context)
        await registry.resolve("live.attr", context)

        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_clear_cache_for_user(self, registry):
        """Test clearing one user's entries leaves other users cached."""
        compute = CountingCompute()
        registry.register(AttributeResolver(name="cached.attr", compute=compute, cache_timeout=60000))
        alice = make_attribute_context(user_id="user-1")
        bob = make_attribute_context(user_id="user-2")

        await registry.resolve("cached.attr", alice)
        await registry.resolve("cached.attr", bob)
        cleared = await registry.clear_cache("user-1")
        await registry.resolve("cached.attr", alice)
        await registry.resolve("cached.attr", bob)

        assert cleared == 1
        assert compute.calls == 3

    @pytest.mark.asyncio
    async def test_clear_cache_user_id_is_not_a_prefix(self, registry):
        """Test clearing a user leaves users whose id merely starts with it."""
        compute = CountingCompute()
        registry.register(AttributeResolver(name="cached.attr", compute=compute, cache_timeout=60000))
        other = make_attribute_context(user_id="alice:x")

        await registry.resolve("cached.attr", other)
        assert await registry.clear_cache("alice") == 0
        await registry.resolve("cached.attr", other)

        assert compute.calls == 1

    @pytest.mark.asyncio
    async def test_clear_cache_glob_characters(self, registry):
        """Test glob characters in a user id only clear that user."""
        compute = CountingCompute()
        registry.register(AttributeResolver(name="cached.attr", compute=compute, cache_timeout=60000))

        await registry.resolve("cached.attr", make_attribute_context(user_id="user-1"))
        await registry.resolve("cached.attr", make_attribute_context(user_id="user-*"))

        assert await registry.clear_cache("user-*") == 1
        await registry.resolve("cached.attr", make_attribute_context(user_id="user-1"))
        assert compute.calls == 2

    @pytest.mark.asyncio
    async def test_clear_cache_all(self, registry):
        """Test clearing without a user drops everything."""
        compute = CountingCompute()
        registry.register(AttributeResolver(name="cached.attr", compute=compute, cache_timeout=60000))

        await registry.resolve("cached.attr", make_attribute_context(user_id="user-1"))
        await registry.resolve("cached.attr", make_attribute_context(user_id="user-2"))

        assert await registry.clear_cache() == 2

    @pytest.mark.asyncio
    async def test_dependencies_written_back(self, registry, context):
        """Test dependencies are resolved first and stored on the context."""
        base = CountingCompute(10)
        registry.register(AttributeResolver(name="risk.base", compute=base))
        registry.register(AttributeResolver(
            name="risk.total",
            depends_on=["risk.base"],
            compute=lambda ctx: ctx.computed_attributes["risk.base"] * 2
        ))

        assert await registry.resolve("risk.total", context) == 20
        assert context.computed_attributes["risk.base"] == 10
        assert base.calls == 1

    @pytest.mark.asyncio
    async def test_present_dependency_not_recomputed(self, registry):
        """Test a dependency already on the context is reused even when falsy."""
        base = CountingCompute(10)
        registry.register(AttributeResolver(name="risk.base", compute=base))
        registry.register(AttributeResolver(
            name="risk.total",
            depends_on=["risk.base"],
            compute=lambda ctx: ctx.computed_attributes["risk.base"] + 1
        ))
        context = make_attribute_context(computed_attributes={"risk.base": 0})

        assert await registry.resolve("risk.total", context) == 1
        assert base.calls == 0

    @pytest.mark.asyncio
    async def test_cyclic_dependency(self, registry, context):
        """Test a dependency loop raises instead of recursing forever."""
        registry.register(AttributeResolver(name="a", depends_on=["b"], compute=lambda ctx: 1))
        registry.register(AttributeResolver(name="b", depends_on=["a"], compute=lambda ctx: 2))

        with pytest.raises(CyclicDependencyError) as exc_info:
            await registry.resolve("a", context)

        assert exc_info.value.chain == ["a", "b", "a"]

    @pytest.mark.asyncio
    async def test_missing_dependency(self, registry, context):
        """Test a dependency without a resolver raises AttributeNotFoundError."""
        registry.register(AttributeResolver(name="a", depends_on=["ghost"], compute=lambda ctx: 1))

        with pytest.raises(AttributeNotFoundError):
            await registry.resolve("a", context)

    @pytest.mark.asyncio
    async def test_compute_failure(self, registry, context, metrics):
        """Test compute errors are wrapped."""
        def explode(ctx):
            raise RuntimeError("directory unavailable")

        registry.register(AttributeResolver(name="user.manager", compute=explode))

        with pytest.raises(AttributeResolutionFailure) as exc_info:
            await registry.resolve("user.manager", context)

        assert isinstance(exc_info.value.cause, RuntimeError)
        metrics.increment_counter.assert_any_call("attribute_resolutions_total", status="failure")

    @pytest.mark.asyncio
    async def test_compute_timeout(self, registry, context):
        """Test slow async computes time out."""
        async def slow(ctx):
            await asyncio.sleep(1)
            return "late"

        registry.register(AttributeResolver(name="slow.attr", compute=slow))

        with pytest.raises(EvaluationTimeout):
            await registry.resolve("slow.attr", context, timeout=0.01)

    @pytest.mark.asyncio
    async def test_blocking_sync_compute_timeout(self, registry, context):
        """Test blocking plain computes are bounded by the same timeout."""
        def slow(ctx):
            time.sleep(0.3)
            return "late"

        registry.register(AttributeResolver(name="slow.sync", compute=slow))

        with pytest.raises(EvaluationTimeout):
            await registry.resolve("slow.sync", context, timeout=0.01)

    @pytest.mark.asyncio
    async def test_resolve_many_isolates_failures(self, registry, context, metrics):
        """Test one failing attribute does not fail the batch."""
        registry.register(AttributeResolver(name="ok.attr", compute=lambda ctx: "ok"))

        results = await registry.resolve_many(["ok.attr", "missing.attr"], context)

        assert results == {"ok.attr": "ok", "missing.attr": None}
        metrics.record_error.assert_called_once_with("AttributeNotFoundError")
