"""
Unit tests for resolution strategies and the strategy registry.
"""

import time
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from shared.errors import ConfigurationError, EvaluationTimeout
from policy_resolver.attributes.registry import AttributeResolver, AttributeResolverRegistry
from policy_resolver.conflicts.models import (
    ConflictContext, ConflictingRule, ConflictType, PolicyConflict, Severity
)
from policy_resolver.expressions.sandbox import ExpressionSandbox
from policy_resolver.rules.models import PolicyEffect
from policy_resolver.strategies.builtin import (
    context_aware, create_default_strategy_registry, deny_wins, most_specific,
    priority_based, temporal_precedence
)
from policy_resolver.strategies.context import StrategyContext
from policy_resolver.strategies.models import PolicyResolution, ResolutionStrategy
from policy_resolver.strategies.registry import StrategyRegistry
from policy_resolver.test_helpers import make_policy, make_resolution_context


def make_conflict(conflict_type=ConflictType.EFFECT_CONFLICT, policies=("p1", "p2"), rules=()):
    return PolicyConflict(
        id=f"{conflict_type.value}_test",
        type=conflict_type,
        severity=Severity.HIGH,
        description="test conflict",
        suggested_resolution="none",
        auto_resolvable=False,
        involved_policies=tuple(policies),
        context=ConflictContext(conflicting_rules=tuple(rules))
    )


def make_strategy_context(policies=(), computed_attributes=None, **kwargs):
    return StrategyContext(
        resolution_context=make_resolution_context(policies=policies, computed_attributes=computed_attributes),
        **kwargs
    )


class TestBuiltinStrategies:
    """Test cases for the built-in strategies."""

    @pytest.fixture
    def mixed_policies(self):
        """An allow and a deny policy at different priorities."""
        return [
            make_policy("p1", "allow", 200, created_at=datetime(2024, 1, 1, tzinfo=timezone.utc)),
            make_policy("p2", "deny", 100, created_at=datetime(2024, 2, 1, tzinfo=timezone.utc)),
        ]

    @pytest.mark.asyncio
    async def test_deny_wins_with_deny(self, mixed_policies):
        """Test any involved deny policy wins."""
        resolution = await deny_wins(make_conflict(), make_strategy_context(mixed_policies))

        assert resolution.decision == PolicyEffect.DENY
        assert resolution.confidence == 0.9
        assert resolution.metadata == {"deny_policies": ["p2"]}
        assert resolution.resolved_conflicts == ("effect_conflict_test",)

    @pytest.mark.asyncio
    async def test_deny_wins_without_deny(self):
        """Test allow when no involved policy denies."""
        policies = [make_policy("p1", "allow"), make_policy("p2", "allow"), make_policy("p3", "deny")]

        resolution = await deny_wins(make_conflict(), make_strategy_context(policies))

        assert resolution.decision == PolicyEffect.ALLOW
        assert resolution.confidence == 0.8

    @pytest.mark.asyncio
    async def test_priority_based_winner(self, mixed_policies):
        """Test the highest priority policy decides."""
        resolution = await priority_based(make_conflict(), make_strategy_context(mixed_policies))

        assert resolution.decision == PolicyEffect.ALLOW
        assert resolution.confidence == 0.85
        assert resolution.metadata == {"winning_policy": "p1", "priority": 200}

    @pytest.mark.asyncio
    async def test_priority_based_tie(self):
        """Test a tie at the top defaults to deny."""
        policies = [make_policy("p1", "allow", 100), make_policy("p2", "deny", 100)]

        resolution = await priority_based(make_conflict(), make_strategy_context(policies))

        assert resolution.decision == PolicyEffect.DENY
        assert resolution.confidence == 0.6
        assert resolution.metadata == {"tied_policies": ["p1", "p2"]}

    @pytest.mark.asyncio
    async def test_priority_based_without_policies(self):
        """Test a conflict naming no known policy cannot be resolved by priority."""
        with pytest.raises(ValueError):
            await priority_based(make_conflict(policies=()), make_strategy_context())

    @pytest.mark.asyncio
    async def test_most_specific(self):
        """Test the most specific conflicting rule decides."""
        rules = [
            ConflictingRule("p1", "r1", PolicyEffect.ALLOW, 100, (), 15),
            ConflictingRule("p2", "r2", PolicyEffect.DENY, 100, (), 25),
        ]

        resolution = await most_specific(make_conflict(rules=rules), make_strategy_context())

        assert resolution.decision == PolicyEffect.DENY
        assert resolution.confidence == 0.75
        assert resolution.metadata == {"winning_policy": "p2", "winning_rule": "r2", "specificity": 25}

    @pytest.mark.asyncio
    async def test_most_specific_without_rules(self):
        """Test low-confidence deny without rule context."""
        resolution = await most_specific(make_conflict(), make_strategy_context())

        assert resolution.decision == PolicyEffect.DENY
        assert resolution.confidence == 0.3

    @pytest.mark.asyncio
    async def test_context_aware_high_risk(self, mixed_policies):
        """Test high risk denies."""
        context = make_strategy_context(mixed_policies, {"risk_score": 80, "trust_level": "high"})

        resolution = await context_aware(make_conflict(), context)

        assert resolution.decision == PolicyEffect.DENY
        assert resolution.confidence == 0.8

    @pytest.mark.asyncio
    async def test_context_aware_default_trust(self, mixed_policies):
        """Test unknown trust is treated as low."""
        resolution = await context_aware(make_conflict(), make_strategy_context(mixed_policies))

        assert resolution.decision == PolicyEffect.DENY
        assert resolution.metadata == {"risk_score": 0, "trust_level": "low"}

    @pytest.mark.asyncio
    async def test_context_aware_low_risk(self, mixed_policies):
        """Test low risk and good trust allow when an allow policy is involved."""
        context = make_strategy_context(mixed_policies, {"risk_score": 10, "trust_level": "high"})

        resolution = await context_aware(make_conflict(), context)

        assert resolution.decision == PolicyEffect.ALLOW
        assert resolution.confidence == 0.7
        assert resolution.metadata["allow_policies"] == ["p1"]

    @pytest.mark.asyncio
    async def test_context_aware_no_allow(self):
        """Test deny when no involved policy allows."""
        policies = [make_policy("p1", "deny"), make_policy("p2", "deny")]
        context = make_strategy_context(policies, {"risk_score": 10, "trust_level": "medium"})

        resolution = await context_aware(make_conflict(), context)

        assert resolution.decision == PolicyEffect.DENY
        assert resolution.confidence == 0.6

    @pytest.mark.asyncio
    async def test_context_aware_uses_resolvers(self, mixed_policies):
        """Test attributes fall back to registered resolvers."""
        registry = AttributeResolverRegistry()
        registry.register(AttributeResolver(name="trust_level", compute=lambda ctx: "high"))
        context = make_strategy_context(mixed_policies, {"risk_score": 5}, attributes=registry)

        resolution = await context_aware(make_conflict(), context)

        assert resolution.decision == PolicyEffect.ALLOW
        assert resolution.metadata["trust_level"] == "high"

    @pytest.mark.asyncio
    async def test_temporal_precedence(self, mixed_policies):
        """Test the newest policy decides."""
        resolution = await temporal_precedence(make_conflict(), make_strategy_context(mixed_policies))

        assert resolution.decision == PolicyEffect.DENY
        assert resolution.confidence == 0.65
        assert resolution.metadata["winning_policy"] == "p2"


class TestStrategyContext:
    """Test cases for StrategyContext."""

    def test_involved_policies(self):
        """Test involved policies keep snapshot order."""
        context = make_strategy_context([make_policy("a"), make_policy("b"), make_policy("c")])

        involved = context.involved_policies(make_conflict(policies=("c", "a", "ghost")))

        assert [p.id for p in involved] == ["a", "c"]

    def test_deadline(self):
        """Test remaining time and expiry."""
        unbounded = make_strategy_context()
        expired = make_strategy_context(deadline=time.monotonic() - 1)

        assert unbounded.remaining() is None
        assert unbounded.expired() is False
        assert expired.expired() is True

    @pytest.mark.asyncio
    async def test_evaluate(self):
        """Test expressions run against the request attributes."""
        context = make_strategy_context(sandbox=ExpressionSandbox())

        result = await context.evaluate("resource.name == 'financial_report'")

        assert result.value is True

    @pytest.mark.asyncio
    async def test_evaluate_without_sandbox(self):
        """Test evaluation needs a sandbox."""
        with pytest.raises(ConfigurationError):
            await make_strategy_context().evaluate("1 + 1")


class TestStrategyRegistry:
    """Test cases for StrategyRegistry."""

    @pytest.fixture
    def metrics(self):
        """Create mock metrics collector."""
        return MagicMock()

    def _strategy(self, name, priority, resolve, types=(ConflictType.EFFECT_CONFLICT,)):
        return ResolutionStrategy(
            name=name,
            description=name,
            applicable_conflict_types=frozenset(types),
            priority=priority,
            resolve=resolve
        )

    def _resolution(self, name, decision=PolicyEffect.ALLOW):
        return PolicyResolution(
            decision=decision,
            reason=name,
            confidence=0.9,
            applied_strategy=name,
            resolved_conflicts=("effect_conflict_test",)
        )

    def test_default_ordering(self):
        """Test built-ins are ordered by priority."""
        registry = create_default_strategy_registry()

        assert [s.name for s in registry.strategies()] == [
            "deny_wins", "priority_based", "most_specific", "context_aware", "temporal_precedence",
        ]
        assert [s.name for s in registry.applicable_to(ConflictType.TEMPORAL_CONFLICT)] == ["temporal_precedence"]
        assert [s.name for s in registry.applicable_to(ConflictType.PRIORITY_OVERLAP)] == ["priority_based"]

    def test_register_reserved_name(self):
        """Test the fallback name cannot be registered."""
        registry = StrategyRegistry()

        with pytest.raises(ConfigurationError):
            registry.register(self._strategy("fallback", 1, AsyncMock()))

    def test_unregister(self):
        """Test removing a strategy."""
        registry = create_default_strategy_registry()

        assert registry.unregister("deny_wins") is True
        assert registry.get("deny_wins") is None
        assert registry.unregister("deny_wins") is False

    @pytest.mark.asyncio
    async def test_first_success_wins(self, metrics):
        """Test lower priority strategies are not consulted after a success."""
        high = AsyncMock(return_value=self._resolution("high"))
        low = AsyncMock(return_value=self._resolution("low"))
        registry = StrategyRegistry(metrics=metrics)
        registry.register(self._strategy("low", 10, low))
        registry.register(self._strategy("high", 20, high))

        resolution = await registry.resolve(make_conflict(), make_strategy_context())

        assert resolution.applied_strategy == "high"
        low.assert_not_called()
        metrics.increment_counter.assert_called_with("resolutions_total", strategy="high", decision="allow")

    @pytest.mark.asyncio
    async def test_failure_falls_through(self, metrics):
        """Test a raising strategy is skipped."""
        broken = AsyncMock(side_effect=RuntimeError("boom"))
        registry = StrategyRegistry(metrics=metrics)
        registry.register(self._strategy("broken", 20, broken))
        registry.register(self._strategy("sync", 10, lambda c, ctx: self._resolution("sync")))

        resolution = await registry.resolve(make_conflict(), make_strategy_context())

        assert resolution.applied_strategy == "sync"
        metrics.increment_counter.assert_any_call("strategy_failures_total", strategy="broken")
        metrics.record_error.assert_called_once_with("STRATEGY_FAILURE")

    @pytest.mark.asyncio
    async def test_all_fail_fallback(self):
        """Test the fallback when every strategy raises."""
        registry = StrategyRegistry()
        registry.register(self._strategy("broken", 20, AsyncMock(side_effect=RuntimeError("boom"))))

        resolution = await registry.resolve(make_conflict(), make_strategy_context())

        assert resolution.decision == PolicyEffect.DENY
        assert resolution.confidence == 0.3
        assert resolution.applied_strategy == "fallback"
        assert resolution.reason == "No applicable resolution strategy found - defaulting to deny"

    @pytest.mark.asyncio
    async def test_none_applicable_fallback(self):
        """Test the fallback when no strategy covers the conflict type."""
        registry = create_default_strategy_registry()

        resolution = await registry.resolve(
            make_conflict(ConflictType.RULE_CONTRADICTION, policies=("p1",)), make_strategy_context()
        )

        assert resolution.applied_strategy == "fallback"

    @pytest.mark.asyncio
    async def test_temporal_conflict_falls_back(self):
        """Test temporal conflicts without policies end in the fallback."""
        registry = create_default_strategy_registry()

        resolution = await registry.resolve(
            make_conflict(ConflictType.TEMPORAL_CONFLICT, policies=()), make_strategy_context()
        )

        assert resolution.applied_strategy == "fallback"
        assert resolution.confidence == 0.3

    @pytest.mark.asyncio
    async def test_expired_deadline(self):
        """Test resolution stops once the deadline has passed."""
        registry = create_default_strategy_registry()
        context = make_strategy_context(deadline=time.monotonic() - 1)

        with pytest.raises(EvaluationTimeout):
            await registry.resolve(make_conflict(), context)
